from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

ENVIRONMENTS = ("development", "staging", "production")
FLAG_TYPES = ("bool", "string", "int", "double", "date", "json")
SCHEMA_VERSION = 2


@dataclass
class App:
    id: str
    name: str
    identifier: str
    artifact_url: str
    fetch_policy: dict
    public_keys: list
    storage_config: dict
    created_at: Optional[datetime] = None


@dataclass
class Flag:
    id: str
    app_id: str
    key: str
    type: str
    description: Optional[str]
    default_values: Optional[dict]
    variants: Dict[str, list]
    archived: bool = False


@dataclass
class Cohort:
    id: str
    app_id: str
    key: str
    name: str
    description: Optional[str]
    conditions: list


# Experiment values per environment: either one value for every target flag,
# or a value per target flag id.

@dataclass(frozen=True)
class FlatValue:
    value: Any

    def resolve(self, flag_id: str) -> Any:
        return self.value


@dataclass(frozen=True)
class PerFlagValue:
    values: Dict[str, Any]

    def resolve(self, flag_id: str) -> Any:
        return self.values.get(flag_id)


@dataclass(frozen=True)
class UnresolvedValue:
    raw: Any

    def resolve(self, flag_id: str) -> Any:
        return None


ExperimentValue = Union[FlatValue, PerFlagValue, UnresolvedValue]


def decode_experiment_value(raw: Any, target_flag_ids: List[str]) -> Optional[ExperimentValue]:
    """Turn a stored per-environment experiment value into a tagged value.

    Tagged rows (``{"kind": "flat"|"per_flag", ...}``) decode directly. Rows
    written before values were tagged are classified once, here: a non-mapping
    is a flat value, a mapping keyed only by target flag ids is per-flag, any
    other mapping cannot be told apart from a json flag value and stays
    unresolved.
    """
    if raw is None:
        return None
    if isinstance(raw, dict):
        kind = raw.get("kind")
        if kind == "flat" and "value" in raw:
            return FlatValue(raw["value"])
        if kind == "per_flag" and isinstance(raw.get("values"), dict):
            return PerFlagValue(dict(raw["values"]))
        if raw and set(raw) <= set(target_flag_ids):
            return PerFlagValue(dict(raw))
        return UnresolvedValue(raw)
    return FlatValue(raw)


@dataclass
class TestVariant:
    name: str
    percentage: float
    values: Dict[str, Optional[ExperimentValue]]


@dataclass
class Experiment:
    id: str
    app_id: str
    key: str
    name: str
    description: Optional[str]
    kind: str  # TEST | ROLLOUT
    salt: str
    conditions: list
    flag_ids: List[str]
    variants: List[TestVariant] = field(default_factory=list)
    percentage: Optional[float] = None
    values: Dict[str, Optional[ExperimentValue]] = field(default_factory=dict)
    archived: bool = False


@dataclass
class SigningKey:
    id: str
    app_id: str
    kid: str
    public_key: str
    private_key: str = field(repr=False)
    algorithm: str = "RS256"
    is_active: bool = False
    created_at: Optional[datetime] = None

    def distribution_info(self) -> dict:
        """What clients need to verify artifacts signed with this key."""
        return {"kid": self.kid, "pem": self.public_key, "algorithm": self.algorithm}

    def public_info(self) -> dict:
        return {
            **self.distribution_info(),
            "active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class PublishRecord:
    id: str
    app_id: str
    version: str
    published_at: datetime
    published_by: str
    changelog: str
    diff_summary: dict
    artifact_size: int


@dataclass
class ConfigArtifact:
    app_identifier: str
    cohorts: Dict[str, dict]
    flags: Dict[str, dict]
    tests: Dict[str, dict]
    rollouts: Dict[str, dict]
    schema_version: int = SCHEMA_VERSION
    config_version: Optional[str] = None
    published_at: Optional[str] = None
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        out = {
            "schema_version": self.schema_version,
            "config_version": self.config_version,
            "published_at": self.published_at,
            "app_identifier": self.app_identifier,
            "cohorts": self.cohorts,
            "flags": self.flags,
            "tests": self.tests,
            "rollouts": self.rollouts,
        }
        if self.metadata is not None:
            out["metadata"] = self.metadata
        return out

    @classmethod
    def from_dict(cls, raw: dict) -> "ConfigArtifact":
        return cls(
            app_identifier=raw.get("app_identifier", ""),
            cohorts=raw.get("cohorts") or {},
            flags=raw.get("flags") or {},
            tests=raw.get("tests") or {},
            rollouts=raw.get("rollouts") or {},
            schema_version=raw.get("schema_version", SCHEMA_VERSION),
            config_version=raw.get("config_version"),
            published_at=raw.get("published_at"),
            metadata=raw.get("metadata"),
        )


@dataclass(frozen=True)
class CompileWarning:
    entity: str
    key: str
    message: str

    def to_dict(self) -> dict:
        return {"entity": self.entity, "key": self.key, "message": self.message}
