class CatalogError(Exception):
    pass


class StructuralInputError(CatalogError):
    pass


class RowValidationError(CatalogError):
    def __init__(self, row_number: int, reason: str) -> None:
        super().__init__(f"Row {row_number}: {reason}")
        self.row_number = row_number
        self.reason = reason


class RecordValidationError(CatalogError):
    def __init__(self, messages: list[str]) -> None:
        super().__init__("; ".join(messages))
        self.messages = list(messages)


class ConflictError(CatalogError):
    def __init__(self, record_id: str) -> None:
        super().__init__(f"Record with ID {record_id} already exists")
        self.record_id = record_id


class NotFoundError(CatalogError):
    def __init__(self, record_id: str) -> None:
        super().__init__(f"Record {record_id} not found")
        self.record_id = record_id


class DependencyUnavailableError(CatalogError):
    """A cache or search backend could not be reached."""


class AuthorizationError(CatalogError):
    pass
