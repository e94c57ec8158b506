from __future__ import annotations

from collections.abc import Iterable

from funnel_engine.enums import DeficiencyEnum, ErrorKindEnum

_MESSAGES: dict[ErrorKindEnum, str] = {
    ErrorKindEnum.NAME_CONFLICT: 'A resource named "{name}" already exists.',
    ErrorKindEnum.LIMIT_REACHED: 'Cannot add "{name}": limit reached.',
    ErrorKindEnum.ALREADY_ASSIGNED: '"{name}" is already assigned to this funnel.',
    ErrorKindEnum.NOT_ASSIGNED: '"{name}" is not assigned to this funnel.',
    ErrorKindEnum.STILL_ASSIGNED: 'Remove "{name}" from every funnel before deleting it.',
    ErrorKindEnum.NOT_FOUND: '"{name}" no longer exists. Refresh and try again.',
    ErrorKindEnum.LOCKED: '"{name}" is locked while it is generating or live.',
    ErrorKindEnum.PERSISTENCE_FAILURE: 'Could not save changes to "{name}".',
    ErrorKindEnum.NOT_READY: '"{name}" is not ready for this action.',
    ErrorKindEnum.DEPLOYMENT_MISMATCH: '"{name}" offers products that do not match its assigned resources.',
    ErrorKindEnum.GENERATION_FAILED: 'Generating "{name}" failed.',
    ErrorKindEnum.DEPLOYMENT_FAILED: 'Could not change the live status of "{name}".',
}


class FunnelEngineError(RuntimeError):
    kind: ErrorKindEnum = ErrorKindEnum.PERSISTENCE_FAILURE
    status_code: int = 400

    def __init__(
        self,
        *,
        entity_name: str,
        message: str | None = None,
        resource_id: str | None = None,
        funnel_id: str | None = None,
    ) -> None:
        self.entity_name = entity_name
        self._message = message
        self.resource_id = resource_id
        self.funnel_id = funnel_id
        super().__init__(message or self.user_message)

    @property
    def user_message(self) -> str:
        if self._message:
            return self._message
        return _MESSAGES[self.kind].format(name=self.entity_name)


class NameConflictError(FunnelEngineError):
    kind = ErrorKindEnum.NAME_CONFLICT
    status_code = 409


class LimitReachedError(FunnelEngineError):
    kind = ErrorKindEnum.LIMIT_REACHED
    status_code = 409


class AlreadyAssignedError(FunnelEngineError):
    kind = ErrorKindEnum.ALREADY_ASSIGNED
    status_code = 409


class NotAssignedError(FunnelEngineError):
    kind = ErrorKindEnum.NOT_ASSIGNED
    status_code = 409


class StillAssignedError(FunnelEngineError):
    kind = ErrorKindEnum.STILL_ASSIGNED
    status_code = 409


class NotFoundError(FunnelEngineError):
    kind = ErrorKindEnum.NOT_FOUND
    status_code = 404


class LockedError(FunnelEngineError):
    kind = ErrorKindEnum.LOCKED
    status_code = 423


class PersistenceFailureError(FunnelEngineError):
    kind = ErrorKindEnum.PERSISTENCE_FAILURE
    status_code = 502


class NotReadyError(FunnelEngineError):
    kind = ErrorKindEnum.NOT_READY
    status_code = 409

    def __init__(self, *, deficiencies: Iterable[DeficiencyEnum] = (), **kwargs) -> None:
        self.deficiencies = frozenset(deficiencies)
        super().__init__(**kwargs)


class DeploymentMismatchError(FunnelEngineError):
    kind = ErrorKindEnum.DEPLOYMENT_MISMATCH
    status_code = 409

    def __init__(
        self,
        *,
        missing_products: list[str],
        extra_resource_ids: list[str],
        **kwargs,
    ) -> None:
        self.missing_products = missing_products
        self.extra_resource_ids = extra_resource_ids
        super().__init__(**kwargs)


class GenerationFailedError(FunnelEngineError):
    kind = ErrorKindEnum.GENERATION_FAILED
    status_code = 502


class DeploymentFailedError(FunnelEngineError):
    kind = ErrorKindEnum.DEPLOYMENT_FAILED
    status_code = 502
