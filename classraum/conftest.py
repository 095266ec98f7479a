from unittest.mock import MagicMock

import pytest

from classraum.academies.tests.factories import AcademyFactory
from classraum.academies.tests.factories import ManagerFactory
from classraum.billing.gateway import GatewayAck
from classraum.billing.gateway import StripeBillingGateway
from classraum.billing.subscriptions import SubscriptionService


@pytest.fixture
def academy(db):
    return AcademyFactory()


@pytest.fixture
def manager(academy):
    return ManagerFactory(academy=academy)


@pytest.fixture
def gateway():
    """A gateway double that accepts every charge."""
    fake = MagicMock(spec=StripeBillingGateway)
    fake.charge.return_value = GatewayAck(reference="pi_test_123", status="succeeded")
    fake.charge_recurring.return_value = GatewayAck(
        reference="pi_test_renewal",
        status="succeeded",
    )
    fake.update_stored_instrument.return_value = GatewayAck(
        reference="pm_test_new",
        status="attached",
    )
    return fake


@pytest.fixture
def service(gateway):
    return SubscriptionService(gateway=gateway)
