"""Compile an app's live entities into the configuration artifact served to SDKs.

Compilation is all-or-nothing: a stale flag row raises ``MigrationRequired``,
any rule violation raises ``ValidationError`` listing every problem found, and
no artifact is produced in either case. Experiment values that cannot be
resolved for a flag/environment are skipped and reported as warnings.
"""
import logging
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from flagpub.errors import MigrationRequired, ValidationError
from flagpub.models import (
    ENVIRONMENTS,
    FLAG_TYPES,
    Cohort,
    CompileWarning,
    ConfigArtifact,
    Experiment,
    ExperimentValue,
    Flag,
    PerFlagValue,
    UnresolvedValue,
)
from flagpub.repositories import AppRepository, CohortRepository, ExperimentRepository, FlagRepository
from flagpub.services import validation

logger = logging.getLogger(__name__)

ORDER_STEP = 10


def next_order(variants: List[dict]) -> int:
    return max(max((v["order"] for v in variants), default=0), 0) + ORDER_STEP


class ConfigCompiler:
    def __init__(self, apps, flags, cohorts, experiments):
        self.apps = apps
        self.flags = flags
        self.cohorts = cohorts
        self.experiments = experiments

    @classmethod
    def for_session(cls, db: Session) -> "ConfigCompiler":
        return cls(
            AppRepository(db),
            FlagRepository(db),
            CohortRepository(db),
            ExperimentRepository(db),
        )

    def compile(self, app_id: str) -> ConfigArtifact:
        artifact, _ = self.compile_with_warnings(app_id)
        return artifact

    def compile_with_warnings(self, app_id: str) -> Tuple[ConfigArtifact, List[CompileWarning]]:
        app = self.apps.get(app_id)
        flags = self.flags.list_active(app_id)
        cohorts = self.cohorts.list_for_app(app_id)
        experiments = self.experiments.list_active(app_id)

        for flag in flags:
            check_defaults(flag)

        errors = collect_errors(flags, cohorts, experiments)
        if errors:
            raise ValidationError(
                f"Configuration for app {app.identifier} has {len(errors)} validation error(s): {errors[0]}",
                errors=errors,
            )

        warnings: List[CompileWarning] = []
        tests = [e for e in experiments if e.kind == "TEST"]
        rollouts = [e for e in experiments if e.kind == "ROLLOUT"]

        artifact = ConfigArtifact(
            app_identifier=app.identifier,
            cohorts={c.key: compile_cohort(c) for c in cohorts},
            flags={f.key: self._compile_flag(f, tests, rollouts, warnings) for f in flags},
            tests={t.key: compile_test(t) for t in tests},
            rollouts={r.key: compile_rollout(r) for r in rollouts},
        )
        for w in warnings:
            logger.warning("compile warning for %s %s: %s", w.entity, w.key, w.message)
        logger.debug(
            "compiled app %s: %d flags, %d cohorts, %d tests, %d rollouts",
            app.identifier, len(artifact.flags), len(artifact.cohorts), len(artifact.tests), len(artifact.rollouts),
        )
        return artifact, warnings

    def _compile_flag(
        self,
        flag: Flag,
        tests: List[Experiment],
        rollouts: List[Experiment],
        warnings: List[CompileWarning],
    ) -> dict:
        targeting_tests = [t for t in tests if flag.id in t.flag_ids]
        targeting_rollouts = [r for r in rollouts if flag.id in r.flag_ids]
        out = {"type": flag.type.lower(), "description": flag.description or ""}
        for env in ENVIRONMENTS:
            variants = [compile_conditional(v) for v in (flag.variants or {}).get(env) or []]
            for test in targeting_tests:
                for tv in test.variants:
                    value = resolve_value(test, tv.values.get(env), flag, env, warnings)
                    if value is None:
                        continue
                    variants.append({
                        "type": "test",
                        "order": next_order(variants),
                        "test": test.key,
                        "variant": tv.name,
                        "value": value,
                    })
            for rollout in targeting_rollouts:
                value = resolve_value(rollout, rollout.values.get(env), flag, env, warnings)
                if value is None:
                    continue
                variants.append({
                    "type": "rollout",
                    "order": next_order(variants),
                    "rollout": rollout.key,
                    "value": value,
                })
            # sorted() is stable: equal orders keep insertion order
            out[env] = {
                "default": flag.default_values[env],
                "variants": sorted(variants, key=lambda v: v["order"]),
            }
        return out


def check_defaults(flag: Flag) -> None:
    defaults = flag.default_values
    if not isinstance(defaults, dict):
        raise MigrationRequired(flag.key, ENVIRONMENTS)
    missing = [env for env in ENVIRONMENTS if defaults.get(env) is None]
    if missing:
        raise MigrationRequired(flag.key, missing)


def collect_errors(flags: List[Flag], cohorts: List[Cohort], experiments: List[Experiment]) -> List[str]:
    errors: List[str] = []
    cohort_keys = {c.key for c in cohorts}

    def check_refs(conditions, where: str) -> None:
        for ref in validation.cohort_references(conditions):
            if ref not in cohort_keys:
                errors.append(f'{where} references missing cohort "{ref}"')

    for flag in flags:
        err = validation.identifier_key_error(flag.key)
        if err:
            errors.append(f'Invalid flag key "{flag.key}": {err}')
        if (flag.type or "").lower() not in FLAG_TYPES:
            errors.append(f'Flag "{flag.key}" has invalid type "{flag.type}"')
        for env in ENVIRONMENTS:
            for variant in (flag.variants or {}).get(env) or []:
                if not isinstance(variant.get("order", 0), int) or isinstance(variant.get("order"), bool):
                    errors.append(f'Flag "{flag.key}" ({env}) has a variant with non-integer order')
                check_refs(variant.get("conditions"), f'Flag "{flag.key}" ({env})')

    for cohort in cohorts:
        err = validation.identifier_key_error(cohort.key)
        if err:
            errors.append(f'Invalid cohort key "{cohort.key}": {err}')
        if any(isinstance(c, dict) and c.get("type") == "cohort" for c in cohort.conditions):
            errors.append(f'Cohort "{cohort.key}" cannot reference other cohorts')

    for exp in experiments:
        label = f'{exp.kind.lower() or "experiment"} "{exp.key}"'
        err = validation.identifier_key_error(exp.key)
        if err:
            errors.append(f'Invalid test/rollout key "{exp.key}": {err}')
        check_refs(exp.conditions, label.capitalize())
        if exp.kind == "TEST":
            bad = [
                err for err in (
                    validation.percentage_error(tv.percentage, f'{label.capitalize()} variant "{tv.name}"')
                    for tv in exp.variants
                ) if err
            ]
            errors.extend(bad)
            if not bad:
                err = validation.traffic_split_error([tv.percentage for tv in exp.variants], label.capitalize())
                if err:
                    errors.append(err)
        elif exp.kind == "ROLLOUT":
            err = validation.percentage_error(exp.percentage, label.capitalize())
            if err:
                errors.append(err)
        else:
            errors.append(f'Experiment "{exp.key}" has unknown kind "{exp.kind}"')
    return errors


def resolve_value(
    exp: Experiment,
    value: Optional[ExperimentValue],
    flag: Flag,
    env: str,
    warnings: List[CompileWarning],
) -> Optional[object]:
    if value is None:
        return None
    if isinstance(value, UnresolvedValue):
        warnings.append(CompileWarning(
            "experiment", exp.key,
            f"{env} value has an unrecognised shape and was skipped for flag {flag.key}",
        ))
        return None
    if isinstance(value, PerFlagValue) and flag.id not in value.values:
        warnings.append(CompileWarning(
            "experiment", exp.key,
            f"no {env} value for target flag {flag.key}; variant skipped",
        ))
        return None
    return value.resolve(flag.id)


def compile_conditional(variant: dict) -> dict:
    return {
        "type": "conditional",
        "order": variant.get("order") or 0,
        "value": variant.get("value"),
        "conditions": variant.get("conditions") or [],
    }


def compile_cohort(cohort: Cohort) -> dict:
    return {
        "name": cohort.name,
        "description": cohort.description or "",
        "conditions": cohort.conditions or [],
    }


def compile_test(test: Experiment) -> dict:
    return {
        "name": test.name,
        "description": test.description or "",
        "type": "test",
        "salt": test.salt,
        "conditions": test.conditions or [],
        "variants": {tv.name: {"percentage": tv.percentage} for tv in test.variants},
    }


def compile_rollout(rollout: Experiment) -> dict:
    return {
        "name": rollout.name,
        "description": rollout.description or "",
        "type": "rollout",
        "salt": rollout.salt,
        "conditions": rollout.conditions or [],
        "percentage": rollout.percentage or 0,
    }


def validate(compiler: ConfigCompiler, app_id: str) -> Dict[str, object]:
    """Run the compiler and report problems instead of raising."""
    report: Dict[str, object] = {"valid": True, "errors": [], "warnings": []}
    try:
        artifact, warnings = compiler.compile_with_warnings(app_id)
    except MigrationRequired as exc:
        report.update(valid=False, errors=[exc.message])
        return report
    except ValidationError as exc:
        report.update(valid=False, errors=list(exc.errors))
        return report

    notes = [w.to_dict() for w in warnings]
    for key, cohort in artifact.cohorts.items():
        if not cohort["conditions"]:
            notes.append({"entity": "cohort", "key": key, "message": "cohort has no conditions"})
    for key, flag in artifact.flags.items():
        for env in ENVIRONMENTS:
            for v in flag[env]["variants"]:
                if v["type"] == "conditional" and not v["conditions"]:
                    notes.append({
                        "entity": "flag", "key": key,
                        "message": f"conditional variant with order {v['order']} in {env} has no conditions",
                    })
    report["warnings"] = notes
    return report
