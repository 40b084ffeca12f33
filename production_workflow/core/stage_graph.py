"""
Stage graph rules for workflow templates.

Pure functions over the stored stage / transition dictionaries: validating a
template definition and computing the set of stages a batch may move to.
"""

from typing import Any, Dict, Iterable, List, Optional, Set

from ..enums import PseudoStage, values
from ..errors import InvalidWorkflowConfigError

PSEUDO_STAGES = frozenset(values(PseudoStage))


def stage_codes(stages: Iterable[Dict[str, Any]]) -> List[str]:
    return [stage.get("stage_code") for stage in stages]


def valid_target_stages(stages: Iterable[Dict[str, Any]]) -> Set[str]:
    """Workflow stage codes plus the pseudo-stages."""
    return set(stage_codes(stages)) | PSEUDO_STAGES


def validate_workflow_definition(
    stages: List[Dict[str, Any]], transitions: List[Dict[str, Any]]
) -> None:
    """Check a workflow's stages and transitions.

    Rules:
    - at least one stage
    - every stage has a stage_code and display_name
    - stage codes are unique and do not reuse a pseudo-stage code
    - every transition endpoint is a known stage or pseudo-stage
      (from_stage_code None means the workflow start)

    Raises:
        InvalidWorkflowConfigError: with the offending value in ``details``
    """
    if not stages:
        raise InvalidWorkflowConfigError(
            "Workflow must have at least one stage", code="NO_STAGES"
        )

    seen: Set[str] = set()
    for index, stage in enumerate(stages):
        code = stage.get("stage_code")
        if not code or not stage.get("display_name"):
            raise InvalidWorkflowConfigError(
                f"Stage at position {index} must have a stage code and a name",
                code="INVALID_STAGE_DEFINITION",
                details={"index": index},
            )
        if code in PSEUDO_STAGES:
            raise InvalidWorkflowConfigError(
                f"Stage code '{code}' is reserved",
                code="RESERVED_STAGE_CODE",
                details={"stage": code, "reserved": sorted(PSEUDO_STAGES)},
            )
        if code in seen:
            raise InvalidWorkflowConfigError(
                f"Duplicate stage code '{code}'",
                code="DUPLICATE_STAGE_CODE",
                details={"stage": code},
            )
        seen.add(code)

    known = seen | PSEUDO_STAGES
    for transition in transitions:
        for key in ("from_stage_code", "to_stage_code"):
            endpoint: Optional[str] = transition.get(key)
            if endpoint is None and key == "from_stage_code":
                continue
            if endpoint not in known:
                raise InvalidWorkflowConfigError(
                    f"Transition references unknown stage '{endpoint}'",
                    code="UNKNOWN_TRANSITION_STAGE",
                    details={"stage": endpoint, "valid_stages": sorted(known)},
                )


def next_stages(transitions: Iterable[Dict[str, Any]], stage_code: str) -> List[str]:
    """Targets of the edges leaving ``stage_code``, in definition order."""
    return [
        t["to_stage_code"]
        for t in transitions
        if t.get("from_stage_code") == stage_code
    ]
