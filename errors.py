class ServiceError(ValueError):
    status_code = 400


class NotFoundError(ServiceError):
    status_code = 404

    def __init__(self, resource: str, resource_id: object = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        if resource_id is None:
            super().__init__(f"{resource} not found")
        else:
            super().__init__(f"{resource} {resource_id} not found")


class ValidationFailed(ServiceError):
    status_code = 400


class NoFieldsToUpdate(ValidationFailed):
    def __init__(self) -> None:
        super().__init__("No fields to update")


class DuplicateReorderID(ValidationFailed):
    def __init__(self, item_id: int) -> None:
        self.item_id = item_id
        super().__init__(f"Duplicate id {item_id} in reorder request")


class DraftTooLarge(ValidationFailed):
    def __init__(self, count: int, limit: int) -> None:
        self.count = count
        self.limit = limit
        super().__init__(f"Draft has {count} updates, maximum is {limit}")


class CoordinatePairing(ValidationFailed):
    def __init__(self) -> None:
        super().__init__("latitude and longitude must both be set or both be empty")


class MissingDestinationAccount(ValidationFailed):
    def __init__(self) -> None:
        super().__init__("Transfer requires destination_account_id")


class InvalidReference(ValidationFailed):
    """A write points at an account or category that is absent or deleted."""

    def __init__(self, resource: str, resource_id: object) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} does not exist")


class DomainRuleViolation(ServiceError):
    status_code = 422


class TypeCategoryMismatch(DomainRuleViolation):
    def __init__(self, transaction_type: str, category_type: str) -> None:
        super().__init__(
            f"Transaction type {transaction_type} does not match category type {category_type}"
        )


class InvalidAccountTypeForExpense(DomainRuleViolation):
    def __init__(self, account_type: str) -> None:
        super().__init__(f"Account type {account_type} cannot hold expense transactions")


class TransferSameAccount(DomainRuleViolation):
    def __init__(self) -> None:
        super().__init__("Transfer destination must differ from source account")


class ConflictError(ServiceError):
    status_code = 409
