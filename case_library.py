"""Clinical case loading and load-time validation."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

import yaml
from pydantic import ValidationError

from schemas import Case, DecisionType

logger = logging.getLogger(__name__)

DEFAULT_CASES_PATH = Path(__file__).resolve().parent / "clinical_cases.json"

_REQUIRED_CASE_FIELDS = ("id", "title", "steps")
_REQUIRED_STEP_FIELDS = ("id", "title")
_REQUIRED_DECISION_FIELDS = ("id", "type", "prompt", "options", "weights")
_DECISION_TYPES = {member.value for member in DecisionType}


class MalformedCaseError(ValueError):
    """Raised when a case document cannot be turned into a playable case."""


def _require(entry: Mapping[str, Any], fields: Iterable[str], where: str) -> None:
    for field in fields:
        if field not in entry or entry[field] is None:
            raise MalformedCaseError(f"{where} missing required field '{field}'")


def _check_unique(ids: List[str], where: str) -> None:
    seen: set[str] = set()
    for item_id in ids:
        if item_id in seen:
            raise MalformedCaseError(f"Duplicate id '{item_id}' in {where}")
        seen.add(item_id)


def _validate_decision(raw: Any, where: str) -> None:
    if not isinstance(raw, dict):
        raise MalformedCaseError(f"{where} must be an object")
    _require(raw, _REQUIRED_DECISION_FIELDS, where)

    decision_type = raw["type"]
    if not isinstance(decision_type, str) or decision_type.strip().lower() not in _DECISION_TYPES:
        raise MalformedCaseError(
            f"{where} has unsupported type {decision_type!r}; expected one of: "
            f"{', '.join(sorted(_DECISION_TYPES))}"
        )

    options = raw["options"]
    if not isinstance(options, list) or not options:
        raise MalformedCaseError(f"{where} options must be a non-empty list")
    option_ids: List[str] = []
    for idx, option in enumerate(options, start=1):
        if not isinstance(option, dict) or not str(option.get("id") or "").strip():
            raise MalformedCaseError(f"{where} option #{idx} is missing a non-empty 'id'")
        option_ids.append(str(option["id"]))
    _check_unique(option_ids, f"{where} options")

    weights = raw["weights"]
    if not isinstance(weights, dict):
        raise MalformedCaseError(f"{where} weights must be an object")
    known = set(option_ids)
    unknown = [str(key) for key in weights if str(key) not in known]
    if unknown:
        raise MalformedCaseError(
            f"{where} weights reference unknown option(s): {', '.join(unknown)}"
        )
    missing = [option_id for option_id in option_ids if option_id not in weights]
    if missing:
        raise MalformedCaseError(f"{where} has no weight for option(s): {', '.join(missing)}")
    for key, value in weights.items():
        if isinstance(value, bool):
            raise MalformedCaseError(f"{where} weight for '{key}' must be numeric")
        try:
            float(value)
        except (TypeError, ValueError) as exc:
            raise MalformedCaseError(f"{where} weight for '{key}' must be numeric") from exc


def load_case(document: Any) -> Case:
    """Validate ``document`` and return an immutable :class:`Case`.

    Validation happens once here; scoring never re-checks option references.
    """

    if isinstance(document, Case):
        return document
    if not isinstance(document, dict):
        raise MalformedCaseError("Case document must be an object")
    _require(document, _REQUIRED_CASE_FIELDS, "Case")
    case_id = str(document["id"])

    steps = document["steps"]
    if not isinstance(steps, list):
        raise MalformedCaseError(f"Case {case_id} steps must be a list")

    step_ids: List[str] = []
    for s_idx, step in enumerate(steps, start=1):
        where = f"Case {case_id} step #{s_idx}"
        if not isinstance(step, dict):
            raise MalformedCaseError(f"{where} must be an object")
        _require(step, _REQUIRED_STEP_FIELDS, where)
        step_ids.append(str(step["id"]))

        decisions = step.get("decisions") or []
        if not isinstance(decisions, list):
            raise MalformedCaseError(f"{where} decisions must be a list")
        decision_ids: List[str] = []
        for d_idx, decision in enumerate(decisions, start=1):
            _validate_decision(decision, f"{where} decision #{d_idx}")
            decision_ids.append(str(decision["id"]))
        _check_unique(decision_ids, f"{where} decisions")
    _check_unique(step_ids, f"Case {case_id} steps")

    try:
        return Case.model_validate(document)
    except ValidationError as exc:
        raise MalformedCaseError(f"Case {case_id} failed validation: {exc}") from exc


def _read_document(path: Path) -> Any:
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix == ".json":
        return json.loads(text)
    if suffix in {".yml", ".yaml"}:
        return yaml.safe_load(text)
    raise MalformedCaseError(f"Unsupported case document format: {path}")


class CaseLibrary:
    """Validated clinical cases indexed by case id and module id."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else DEFAULT_CASES_PATH
        self._cases: Dict[str, Case] = {}
        self._by_module: Dict[str, str] = {}
        self.reload()

    # ------------------------------------------------------------------
    def reload(self) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"Case document not found: {self.path}")

        try:
            raw = _read_document(self.path)
        except (json.JSONDecodeError, yaml.YAMLError) as exc:
            raise MalformedCaseError(f"Could not parse {self.path}: {exc}") from exc

        if isinstance(raw, dict):
            entries = []
            for module_id, entry in raw.items():
                if isinstance(entry, dict):
                    entry = {"moduleId": module_id, **entry}
                entries.append(entry)
        elif isinstance(raw, list):
            entries = raw
        else:
            raise MalformedCaseError("Case document root must be a list or an object")

        cases: Dict[str, Case] = {}
        by_module: Dict[str, str] = {}
        for entry in entries:
            case = load_case(entry)
            if case.id in cases:
                raise MalformedCaseError(f"Duplicate case id detected: {case.id}")
            cases[case.id] = case
            if case.module_id:
                by_module[case.module_id] = case.id

        self._cases = cases
        self._by_module = by_module
        logger.info("Loaded %d clinical case(s) from %s", len(cases), self.path)

    # ------------------------------------------------------------------
    def get(self, key: str) -> Case:
        """Resolve ``key`` as a case id first, then as a module id."""

        case = self.find(key)
        if case is None:
            raise KeyError(f"Unknown clinical case: {key}")
        return case

    def find(self, key: str) -> Optional[Case]:
        case = self._cases.get(key)
        if case is None and key in self._by_module:
            case = self._cases.get(self._by_module[key])
        return case

    @property
    def cases(self) -> List[Case]:
        return list(self._cases.values())

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.find(key) is not None

    def __iter__(self) -> Iterator[Case]:
        return iter(self._cases.values())

    def __len__(self) -> int:
        return len(self._cases)
