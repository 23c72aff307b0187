"""Runtime subject type detection.

Records reach the engine as plain mappings (ORM rows, DTOs, dicts) with no
class identity. Callers that know the type attach the tag field; everything
else is classified by its field signature.
"""

from collections.abc import Mapping
from typing import Any, Callable

from packages.ability.models import SubjectType

SUBJECT_TYPE_FIELD = "__type"

# Fields that mark a record as shift-specific rather than a pay period
_SHIFT_FIELDS = ("shiftTypeId", "shiftScheduleId", "startDateTime")


def _fields(instance: Any) -> set[str]:
    if isinstance(instance, Mapping):
        return {k for k in instance.keys() if isinstance(k, str)}
    try:
        return {k for k in vars(instance) if not k.startswith("_")}
    except TypeError:
        return set()


def _has(*names: str) -> Callable[[set[str]], bool]:
    return lambda fields: all(name in fields for name in names)


def _is_pay_period(fields: set[str]) -> bool:
    return "startDate" in fields and "endDate" in fields and not any(
        name in fields for name in _SHIFT_FIELDS
    )


def _is_user(fields: set[str]) -> bool:
    return "email" in fields and "firstName" in fields and "medicalRecordNumber" not in fields


# Order matters: first match wins.
SIGNATURE_RULES: tuple[tuple[Callable[[set[str]], bool], SubjectType], ...] = (
    (_has("medicalRecordNumber"), SubjectType.PATIENT),
    (_is_user, SubjectType.USER),
    (_has("name", "organizationId", "parentId"), SubjectType.DEPARTMENT),
    (_has("name", "isSystemRole"), SubjectType.ROLE),
    (_has("action", "subject"), SubjectType.PERMISSION),
    (_has("shiftTypeId", "startDateTime"), SubjectType.SHIFT_SCHEDULE),
    (_has("shiftScheduleId", "overtimeMinutes"), SubjectType.SHIFT_ATTENDANCE),
    (_is_pay_period, SubjectType.PAY_PERIOD),
    (_has("staffProfileId", "payPeriodId"), SubjectType.STAFF_PAYMENT),
    (_has("token", "expiresAt"), SubjectType.INVITATION),
    (_has("staffType"), SubjectType.STAFF_PROFILE),
    (_has("category", "name"), SubjectType.ORGANIZATION),
    (_has("patientId", "type", "createdById"), SubjectType.MEDICAL_RECORD),
    (_has("patientId", "departmentId", "startTime"), SubjectType.APPOINTMENT),
    (_has("basePayMultiplier"), SubjectType.SHIFT_TYPE),
    (_has("isOvernight"), SubjectType.SHIFT_TYPE),
)


class SubjectTypeResolver:
    """Classifies records into subject types.

    Detection is total: unknown shapes resolve to SubjectType.ALL.
    """

    def __init__(self, tag_field: str = SUBJECT_TYPE_FIELD):
        self.tag_field = tag_field

    def tag_of(self, instance: Any) -> SubjectType | None:
        """Return the explicit type tag carried by a record, if any."""
        if isinstance(instance, Mapping):
            tag = instance.get(self.tag_field)
        else:
            tag = getattr(instance, self.tag_field, None)
        return SubjectType.from_name(tag) if tag is not None else None

    def detect(self, instance: Any) -> SubjectType:
        if instance is None:
            return SubjectType.ALL
        if isinstance(instance, SubjectType):
            return instance

        tagged = self.tag_of(instance)
        if tagged is not None:
            return tagged

        fields = _fields(instance)
        for matches, subject_type in SIGNATURE_RULES:
            if matches(fields):
                return subject_type
        return SubjectType.ALL


_default_resolver = SubjectTypeResolver()


def detect_subject_type(instance: Any) -> SubjectType:
    """Classify a record with the default resolver."""
    return _default_resolver.detect(instance)
