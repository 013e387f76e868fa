"""
Staged pipeline orchestration.

Runs an ordered list of steps (raw counts → filtered → scaled → reduced →
tested) where each step takes the previous step's table and returns a new
one. Steps can be declared in code or in a YAML file:

    steps:
      - name: filter
        operation: keep_abundant
        params:
          factor_of_interest: condition
          min_count: 10
      - name: scale
        operation: scale_abundance
        params:
          method: TMM
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import logging
import yaml
import pandas as pd
from numpy.linalg import LinAlgError

from abundance_table import AbundanceTable, PipelineError, StageFailed
from abundance_filter import identify_abundant, keep_abundant, keep_variable
from scaling import ScalingMethod, scale_abundance
from stages import (
    METHODS,
    cluster_elements,
    deconvolve_cellularity,
    reduce_dimensions,
    test_differential_abundance,
)
from nesting import for_each_group

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "pipeline.yaml"

OPERATIONS: Dict[str, Callable[..., AbundanceTable]] = {
    "identify_abundant": identify_abundant,
    "keep_abundant": keep_abundant,
    "keep_variable": keep_variable,
    "scale_abundance": scale_abundance,
    "reduce_dimensions": reduce_dimensions,
    "cluster_elements": cluster_elements,
    "test_differential_abundance": test_differential_abundance,
    "deconvolve_cellularity": deconvolve_cellularity,
}


@dataclass
class PipelineStep:
    """One named step: fn(table, **kwargs) -> table."""

    name: str
    fn: Callable[..., AbundanceTable]
    kwargs: Dict[str, Any] = field(default_factory=dict)


class TidyAbundancePipeline:
    """Ordered, synchronous sequence of table transformations."""

    def __init__(self, steps: Optional[List[PipelineStep]] = None):
        self.steps: List[PipelineStep] = list(steps or [])
        self.history: List[Tuple[str, int, int]] = []

    def add_step(self, name: str, fn: Callable[..., AbundanceTable], **kwargs) -> "TidyAbundancePipeline":
        self.steps.append(PipelineStep(name, fn, kwargs))
        return self

    def run(self, table: AbundanceTable) -> AbundanceTable:
        """
        Run every step in order.

        Args:
            table: Input table (never modified)

        Returns:
            Output of the last step

        Raises:
            PipelineError: the first failing step's error, with .stage set to
                the step name ('outer/inner' for nested pipelines) and the
                operation's own stage kept in details['operation_stage'].
                Errors from external libraries are wrapped in StageFailed.
        """
        self.history = [("input", table.n_samples, table.n_transcripts)]
        current = table
        for step in self.steps:
            try:
                current = step.fn(current, **step.kwargs).validate()
            except PipelineError as e:
                # nested pipelines prepend their own step names
                if "step_path" not in e.details:
                    e.details["operation_stage"] = e.stage
                    e.details["step_path"] = []
                e.details["step_path"] = [step.name] + e.details["step_path"]
                e.stage = "/".join(e.details["step_path"])
                logger.error(
                    f"Pipeline step '{step.name}' failed"
                    f"{f' on {e.entity}' if e.entity else ''}: {e.message}",
                    exc_info=True,
                )
                raise
            except (ValueError, RuntimeError, TypeError, KeyError, LinAlgError) as e:
                logger.error(f"Pipeline step '{step.name}' failed: {str(e)}", exc_info=True)
                raise StageFailed(
                    str(e), stage=step.name, details={"step_path": [step.name]}
                ) from e

            self.history.append((step.name, current.n_samples, current.n_transcripts))
            logger.info(
                f"Step '{step.name}' done: {current.n_samples} samples × "
                f"{current.n_transcripts} transcripts"
            )
        return current

    @classmethod
    def from_config(cls, config: Union[str, Path, Dict[str, Any]] = DEFAULT_CONFIG_PATH) -> "TidyAbundancePipeline":
        """Build a pipeline from a YAML path or an already-loaded config dict."""
        if not isinstance(config, dict):
            config = load_pipeline_config(config)
        return cls([_step_from_config(entry) for entry in config["steps"]])


def load_pipeline_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load and check a pipeline YAML file.

    Returns:
        Dict with a 'steps' list of {name, operation, params}
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Pipeline config not found: {config_path}")

    with open(config_file, "r") as f:
        config = yaml.safe_load(f) or {}

    steps = config.get("steps")
    if not isinstance(steps, list) or not steps:
        raise ValueError(f"Pipeline config {config_path} has no 'steps' list.")
    for i, entry in enumerate(steps):
        _check_step_entry(entry, f"steps[{i}]")
    return config


def _check_step_entry(entry: Any, where: str) -> None:
    if not isinstance(entry, dict) or "operation" not in entry:
        raise ValueError(f"{where}: each step needs an 'operation'.")
    operation = entry["operation"]
    if operation != "for_each_group" and operation not in OPERATIONS:
        raise ValueError(
            f"{where}: unknown operation '{operation}'. "
            f"Available: {', '.join(sorted(OPERATIONS))}, for_each_group."
        )
    if operation == "for_each_group":
        params = entry.get("params") or {}
        if "grouping_columns" not in params or not params.get("steps"):
            raise ValueError(f"{where}: for_each_group needs 'grouping_columns' and 'steps'.")
        for j, sub in enumerate(params["steps"]):
            _check_step_entry(sub, f"{where}.steps[{j}]")


def _step_from_config(entry: Dict[str, Any]) -> PipelineStep:
    """Turn {name, operation, params} into a PipelineStep with typed params."""
    _check_step_entry(entry, entry.get("name", "step"))
    operation = entry["operation"]
    name = entry.get("name", operation)
    params = dict(entry.get("params") or {})

    if operation == "for_each_group":
        inner = TidyAbundancePipeline([_step_from_config(s) for s in params["steps"]])
        return PipelineStep(
            name,
            for_each_group,
            {"grouping_columns": params["grouping_columns"], "stage_fn": inner.run},
        )

    if "method" in params:
        if operation == "scale_abundance":
            params["method"] = ScalingMethod(params["method"])
        elif operation in METHODS:
            params["method"] = METHODS[operation](params["method"])

    if operation == "deconvolve_cellularity":
        signature_path = params.pop("signature_path", None)
        if signature_path is None:
            raise ValueError(f"{name}: deconvolve_cellularity needs 'signature_path'.")
        params["signature"] = pd.read_csv(signature_path, index_col=0)

    if operation == "test_differential_abundance" and "contrast" in params:
        params["contrast"] = tuple(params["contrast"])

    return PipelineStep(name, OPERATIONS[operation], params)
