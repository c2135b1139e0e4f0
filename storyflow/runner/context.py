"""
Component wiring for one storyflow invocation.
"""

import threading
from dataclasses import dataclass, field
from pathlib import Path

from storyflow.agents.claude import ClaudeCliProvider
from storyflow.git.worktree import GitBinding
from storyflow.lib.agents_config import load_agents_config
from storyflow.lib.config import ProjectConfig, load_project_config
from storyflow.pm.store import Store
from storyflow.runner.execution_log import ExecutionLog
from storyflow.runner.workspace import WorkspaceOrchestrator
from storyflow.workflow.engine import EngineSettings, ImplementationEngine
from storyflow.workflow.scheduler import Scheduler


@dataclass
class AppContext:
    """Every component a command needs, constructed explicitly."""
    config: ProjectConfig
    store: Store
    execution_log: ExecutionLog
    scheduler: Scheduler
    workspaces: WorkspaceOrchestrator
    provider: object
    engine: ImplementationEngine
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def create(cls, project_dir: Path, provider=None, vcs=None) -> "AppContext":
        """Load configuration from ``project_dir`` and build the components.

        ``provider`` and ``vcs`` replace the CLI agent and git binding.
        """
        config = load_project_config(project_dir)
        store = Store(config.state_dir, lock_timeout=config.lock_timeout)
        execution_log = ExecutionLog(store)
        scheduler = Scheduler(store, execution_log)
        workspaces = WorkspaceOrchestrator(
            vcs or GitBinding(config.repo_path),
            execution_log,
            config.worktree_root,
            base_ref=config.base_branch,
        )
        if provider is None:
            provider = ClaudeCliProvider(
                load_agents_config(config.project_dir),
                timeout=config.ai_timeout,
            )
        engine = ImplementationEngine(
            store,
            scheduler,
            workspaces,
            provider,
            execution_log,
            EngineSettings.from_config(config),
        )
        return cls(
            config=config,
            store=store,
            execution_log=execution_log,
            scheduler=scheduler,
            workspaces=workspaces,
            provider=provider,
            engine=engine,
        )
