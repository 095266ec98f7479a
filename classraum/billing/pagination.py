from rest_framework.pagination import CursorPagination


class ChargeHistoryPagination(CursorPagination):
    page_size = 10
    page_size_query_param = "limit"
    max_page_size = 50
    ordering = "-processed_at"
