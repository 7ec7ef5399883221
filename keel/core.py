"""
Keel Core - declarative desired-state resource graphs.

Plan Pipeline: Load config → Build stack (main.py) → Dependency graph → Diff against state → Plan
Apply Pipeline: Lock state → Plan (or load a saved plan) → Execute through the provider → Save state
Destroy Pipeline: Lock state → Plan deletion of everything recorded → Execute
"""

import importlib.util
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .assembly.graph import DependencyGraph
from .assembly.planner import Plan, build_destroy_plan, build_plan
from .config import StackConfig, load_stack_config
from .errors import ConfigurationError, StalePlanError
from .forge.executor import ApplyResult, PlanExecutor
from .forge.state import FileStateStore, StateStore
from .providers.base import Provider
from .providers.simulated import SimulatedCloudProvider
from .resources.base import Resource
from .settings import get_settings
from .stack import Stack

logger = logging.getLogger(__name__)

MAIN_FILE = "main.py"
CONFIG_FILE = "stack.json"
PROVIDER_STORE = "cloud.json"


class KeelCore:
    """Main coordinator for the Keel pipeline."""

    def __init__(
        self,
        project_dir: Path | None = None,
        provider: Provider | None = None,
        store: StateStore | None = None,
        stack_name: str | None = None,
        max_workers: int | None = None,
        timeout: float | None = None,
    ):
        """
        Initialize KeelCore.

        Args:
            project_dir: Directory holding main.py and stack.json (default: cwd)
            provider: Provider to apply through (default: simulated provider
                persisted next to the state)
            store: State store (default: JSON files in settings.state_dir)
            stack_name: Stack whose state is used (overrides settings/.env)
            max_workers: Parallel provider calls (overrides settings/.env)
            timeout: Provider call timeout in seconds (overrides settings/.env)
        """
        settings = get_settings()

        self.project_dir = Path(project_dir) if project_dir else Path.cwd()
        self.stack_name = stack_name or settings.stack_name

        state_dir = Path(settings.state_dir)
        if not state_dir.is_absolute():
            state_dir = self.project_dir / state_dir
        self.state_dir = state_dir

        self.store = store or FileStateStore(state_dir, self.stack_name)
        self.provider = provider or SimulatedCloudProvider(
            region=settings.region,
            store_path=state_dir / PROVIDER_STORE,
        )
        self.executor = PlanExecutor(
            self.provider, self.store, max_workers=max_workers, timeout=timeout,
        )

        logger.info(f"KeelCore initialized for stack '{self.stack_name}'")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_config(self, config_file: Path | None = None) -> StackConfig:
        """Load stack configuration (stack.json plus environment overrides)."""
        return load_stack_config(config_file or self.project_dir / CONFIG_FILE)

    def load_stack(
        self,
        main_file: Path | None = None,
        config: StackConfig | None = None,
    ) -> Stack:
        """
        Load the declared stack from main.py by executing it.

        main.py either defines ``build(config) -> Stack``, a module-level
        ``stack``, or plain Resource instances as module globals.

        Args:
            main_file: Path to main.py (default: project_dir/main.py)
            config: Stack configuration (loaded from stack.json if omitted)

        Returns:
            The declared Stack

        Raises:
            FileNotFoundError: If main.py does not exist
            ConfigurationError: If main.py declares no resources
        """
        main_file = main_file or self.project_dir / MAIN_FILE
        if not main_file.exists():
            raise FileNotFoundError(f"File not found: {main_file}")

        # Load the module dynamically
        spec = importlib.util.spec_from_file_location("keel_user_main", main_file)
        if spec is None or spec.loader is None:
            raise ImportError(f"Could not load {main_file}")

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        build = getattr(module, "build", None)
        if callable(build):
            stack = build(config if config is not None else self.load_config())
            if not isinstance(stack, Stack):
                raise ConfigurationError(
                    f"build() in {main_file} must return a Stack, got {type(stack).__name__}"
                )
        elif isinstance(getattr(module, "stack", None), Stack):
            stack = module.stack
        else:
            # Collect all Resource instances from module globals
            stack = Stack(main_file.parent.name)
            for name, obj in vars(module).items():
                if isinstance(obj, Resource):
                    stack.add(obj)
                    logger.debug(f"Found resource: {name} ({type(obj).__name__})")

        if not len(stack):
            raise ConfigurationError(f"No resources found in {main_file}")

        logger.info(f"Loaded stack '{stack.name}' with {len(stack)} resources")
        return stack

    # ------------------------------------------------------------------
    # Pipelines
    # ------------------------------------------------------------------

    def _plan_for(self, stack: Stack, snapshot) -> Plan:
        graph = DependencyGraph.from_stack(stack)
        return build_plan(graph, snapshot, exports=stack.exports)

    def plan(
        self,
        main_file: Path | None = None,
        config: StackConfig | None = None,
        out: Path | None = None,
        stack: Stack | None = None,
    ) -> Plan:
        """
        Plan mode: compute the ordered changes without touching the provider.

        Args:
            main_file: Path to main.py
            config: Stack configuration (loaded from stack.json if omitted)
            out: Save the plan to this file for a later ``apply``
            stack: Already loaded stack (main.py is not executed again)

        Returns:
            The Plan
        """
        logger.info(f"Starting Keel plan for stack '{self.stack_name}'")
        if stack is None:
            stack = self.load_stack(main_file, config)

        with self.store.lock():
            snapshot = self.store.load()
            plan = self._plan_for(stack, snapshot)

        if out is not None:
            plan.save(out)
            logger.info(f"Plan saved to {out}")
        return plan

    def apply(
        self,
        main_file: Path | None = None,
        config: StackConfig | None = None,
        plan_file: Path | None = None,
        confirm: Callable[[Plan], bool] | None = None,
        stack: Stack | None = None,
    ) -> ApplyResult | None:
        """
        Full pipeline: plan (or load a saved plan) → execute → save state.

        The state lock is held from planning until the last step is recorded.

        Args:
            main_file: Path to main.py
            config: Stack configuration (loaded from stack.json if omitted)
            plan_file: Apply this saved plan instead of planning afresh
            confirm: Called with the plan before anything is changed; returning
                False aborts the apply
            stack: Already loaded stack (main.py is not executed again)

        Returns:
            ApplyResult, or None if confirm declined
        """
        logger.info(f"Starting Keel apply for stack '{self.stack_name}'")
        if stack is None:
            stack = self.load_stack(main_file, config)

        with self.store.lock():
            snapshot = self.store.load()
            if plan_file is not None:
                plan = Plan.load(plan_file)
                if plan.destroy:
                    raise StalePlanError(f"{plan_file} is a destroy plan; use destroy instead")
                logger.info(f"Loaded saved plan with {len(plan.steps)} steps from {plan_file}")
            else:
                plan = self._plan_for(stack, snapshot)

            if confirm is not None and not confirm(plan):
                logger.info("Apply declined")
                return None

            result = self.executor.apply(plan, stack, snapshot)

        logger.info("Keel apply complete")
        return result

    def destroy(self, confirm: Callable[[Plan], bool] | None = None) -> ApplyResult | None:
        """
        Destroy pipeline: delete every resource recorded in the state.

        Args:
            confirm: Called with the destroy plan; returning False aborts

        Returns:
            ApplyResult, or None if confirm declined
        """
        logger.info(f"Starting Keel destroy for stack '{self.stack_name}'")

        with self.store.lock():
            snapshot = self.store.load()
            plan = build_destroy_plan(snapshot)

            if confirm is not None and not confirm(plan):
                logger.info("Destroy declined")
                return None

            result = self.executor.apply(plan, None, snapshot)

        logger.info("Keel destroy complete")
        return result

    def outputs(self) -> dict[str, Any]:
        """Stack outputs recorded by the last successful apply."""
        return dict(self.store.load().outputs)

    def cancel(self) -> None:
        """Cancel a running apply or destroy (safe to call from a signal handler)."""
        self.executor.cancel()
