from dataclasses import dataclass, field
from typing import List, Optional

from flagpub.models import ConfigArtifact


@dataclass
class Change:
    entity_type: str  # flag | cohort
    action: str       # added | modified | removed
    key: str
    name: str
    details: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        out = {"entity_type": self.entity_type, "action": self.action, "key": self.key, "name": self.name}
        if self.details:
            out["details"] = self.details
        return out


@dataclass
class ChangeSet:
    changes: List[Change]
    flag_count: int
    cohort_count: int

    @property
    def empty(self) -> bool:
        return not self.changes

    def to_dict(self) -> dict:
        return {
            "changes": [c.to_dict() for c in self.changes],
            "flag_count": self.flag_count,
            "cohort_count": self.cohort_count,
        }


def _flag_name(key: str, _entry: dict) -> str:
    return f"Flag: {key}"


def _cohort_name(key: str, entry: dict) -> str:
    return f"Cohort: {(entry or {}).get('name') or key}"


def field_differences(current: dict, previous: dict) -> List[str]:
    details = []
    for key in sorted(set(current) | set(previous)):
        if key not in current:
            details.append(f"Removed: {key}")
        elif key not in previous:
            details.append(f"Added: {key}")
        elif current[key] != previous[key]:
            details.append(f"Changed: {key}")
    return details


def _compare(entity_type: str, current: dict, previous: dict, name_of) -> List[Change]:
    changes = []
    for key in sorted(current):
        if key not in previous:
            changes.append(Change(entity_type, "added", key, name_of(key, current[key])))
        elif current[key] != previous[key]:
            # dict equality is structural and ignores key order
            changes.append(Change(
                entity_type, "modified", key, name_of(key, current[key]),
                field_differences(current[key], previous[key])
                if isinstance(current[key], dict) and isinstance(previous[key], dict) else [],
            ))
    for key in sorted(previous):
        if key not in current:
            changes.append(Change(entity_type, "removed", key, name_of(key, previous[key])))
    return changes


def diff(new: ConfigArtifact, previous: Optional[ConfigArtifact]) -> ChangeSet:
    prev_flags = previous.flags if previous else {}
    prev_cohorts = previous.cohorts if previous else {}
    changes = _compare("flag", new.flags, prev_flags, _flag_name)
    changes += _compare("cohort", new.cohorts, prev_cohorts, _cohort_name)
    return ChangeSet(changes=changes, flag_count=len(new.flags), cohort_count=len(new.cohorts))
