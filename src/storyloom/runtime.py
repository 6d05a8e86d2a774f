# src/storyloom/runtime.py
"""Wiring for a running storyloom instance.

Builds the store, session machinery, orchestrator, sweeper and admin path
from StoryloomSettings, and registers the configured narrative templates.

Example:
    settings = load_settings(Path("settings.yaml"))
    configure_logging(json_output=settings.logging.json_output, level=settings.logging.level)

    with StoryloomRuntime.from_settings(settings, collaborators) as runtime:
        session = runtime.sessions.create_session("classic-six", now=runtime.clock.now())
        runtime.phases.submit_intake(session.session_id, intake_collaborator)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from storyloom.contracts import NarrativeTemplate, StageName
from storyloom.core.config import StoryloomSettings, resolve_templates
from storyloom.core.logging import get_logger
from storyloom.core.store import SessionStore, StageStatusStore, StoryloomDB
from storyloom.engine.admin import AdminOverride
from storyloom.engine.backoff import BackoffPolicy
from storyloom.engine.clock import DEFAULT_CLOCK, Clock
from storyloom.engine.collaborators import CollaboratorRegistry, StageCollaborator
from storyloom.engine.orchestrator import GenerationPipelineOrchestrator
from storyloom.engine.sweep import RetrySweeper
from storyloom.session import ArcProgressionTracker, SessionPhaseMachine

logger = get_logger(__name__)


@dataclass
class StoryloomRuntime:
    """All collaborating components over one database."""

    settings: StoryloomSettings
    db: StoryloomDB
    clock: Clock
    stages: StageStatusStore
    sessions: SessionStore
    arc: ArcProgressionTracker
    phases: SessionPhaseMachine
    orchestrator: GenerationPipelineOrchestrator
    sweeper: RetrySweeper
    admin: AdminOverride
    templates: dict[str, NarrativeTemplate] = field(default_factory=dict)

    @classmethod
    def from_settings(
        cls,
        settings: StoryloomSettings,
        collaborators: CollaboratorRegistry | Mapping[StageName, StageCollaborator],
        *,
        clock: Clock | None = None,
        db: StoryloomDB | None = None,
    ) -> StoryloomRuntime:
        """Build and seed a runtime. Does not start the sweep thread; call start()."""
        clock = clock or DEFAULT_CLOCK
        db = db or StoryloomDB.from_url(settings.database.url, echo=settings.database.echo)

        stages = StageStatusStore(db)
        sessions = SessionStore(db)
        arc = ArcProgressionTracker(sessions, clock=clock)
        phases = SessionPhaseMachine(sessions, clock=clock, tracker=arc)
        orchestrator = GenerationPipelineOrchestrator(
            stages,
            sessions,
            collaborators,
            backoff=BackoffPolicy.from_settings(settings.backoff, clock=clock),
            clock=clock,
            max_workers=settings.concurrency.max_workers,
            phase_machine=phases,
        )
        sweeper = RetrySweeper(stages, orchestrator, clock=clock, interval_seconds=settings.sweep.interval_seconds)
        admin = AdminOverride(stages, orchestrator, clock=clock)

        runtime = cls(
            settings=settings,
            db=db,
            clock=clock,
            stages=stages,
            sessions=sessions,
            arc=arc,
            phases=phases,
            orchestrator=orchestrator,
            sweeper=sweeper,
            admin=admin,
        )
        for template_id, steps in resolve_templates(settings).items():
            runtime.register_template(NarrativeTemplate(template_id=template_id, steps=tuple(steps)))
        return runtime

    def register_template(self, template: NarrativeTemplate) -> NarrativeTemplate:
        registered = self.sessions.register_template(template, now=self.clock.now())
        self.templates[registered.template_id] = registered
        return registered

    def start(self) -> None:
        """Start the background retry sweep if enabled."""
        if self.settings.sweep.enabled:
            self.sweeper.start()
        logger.info("runtime_started", sweep_enabled=self.settings.sweep.enabled, templates=sorted(self.templates))

    def close(self) -> None:
        self.sweeper.stop()
        self.orchestrator.shutdown(wait=True)
        self.db.close()

    def __enter__(self) -> StoryloomRuntime:
        self.start()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.close()
