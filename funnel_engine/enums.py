from enum import Enum


class OriginKindEnum(str, Enum):
    AFFILIATE = "AFFILIATE"
    OWNED = "OWNED"


class ValueCategoryEnum(str, Enum):
    PAID = "PAID"
    FREE = "FREE"


class ReadinessStateEnum(str, Enum):
    INSUFFICIENT = "INSUFFICIENT"
    READY_TO_GENERATE = "READY_TO_GENERATE"
    GENERATING = "GENERATING"
    GENERATED = "GENERATED"
    DEPLOYED = "DEPLOYED"


class DeficiencyEnum(str, Enum):
    too_few_total = "tooFewTotal"
    no_free_resource = "noFreeResource"


class SignalKindEnum(str, Enum):
    created = "created"
    updated = "updated"
    deleted = "deleted"
    assigned = "assigned"
    unassigned = "unassigned"


class ChangeKindEnum(str, Enum):
    applied = "applied"
    confirmed = "confirmed"
    reverted = "reverted"
    replaced = "replaced"


class ErrorKindEnum(str, Enum):
    NAME_CONFLICT = "NameConflict"
    LIMIT_REACHED = "LimitReached"
    ALREADY_ASSIGNED = "AlreadyAssigned"
    NOT_ASSIGNED = "NotAssigned"
    STILL_ASSIGNED = "StillAssigned"
    NOT_FOUND = "NotFound"
    LOCKED = "Locked"
    PERSISTENCE_FAILURE = "PersistenceFailure"
    NOT_READY = "NotReady"
    DEPLOYMENT_MISMATCH = "DeploymentMismatch"
    GENERATION_FAILED = "GenerationFailed"
    DEPLOYMENT_FAILED = "DeploymentFailed"
