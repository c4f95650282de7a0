from __future__ import annotations


class EVValueError(Exception): ...


class ValidationError(EVValueError): ...


class StorageFailure(EVValueError): ...


class NotFoundError(EVValueError):
    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} with id {entity_id} not found")


def require(condition: bool, message: str, exc: type[EVValueError] = ValidationError) -> None:
    """Raise the given exception if condition is False."""
    if not condition:
        raise exc(message)
