"""Convergence engine: fan a validated instance set out into pipelines.

For every instance the mandatory pipeline runs identity → filesystem → config
→ service, then the git subgraph when ``manage_git`` is set. Instances are
independent and run on a bounded thread pool; a failure is recorded in that
instance's report and never stops the others.
"""
from __future__ import annotations

import concurrent.futures
import traceback
from collections.abc import Sequence
from dataclasses import dataclass, field

from .config import AppConfig
from .converge.filesystem import (
    apply_directory_plan,
    data_dir_spec,
    plan_directories,
    shared_dir_spec,
)
from .converge.git import apply_git_plan, inspect_git, plan_git, render_hook
from .converge.identity import apply_identity_plan, inspect_identity, plan_identity
from .converge.settings import apply_config_plan, plan_config_file
from .errors import ConvergenceError, GitStepError
from .exit_codes import ExitCode
from .host import CommandError, SystemHost
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope
from .providers.systemd import SystemdProvider
from .registry import EffectiveInstance, RegistryState
from .templates import TemplateEngine

# Components whose failure still leaves the git subgraph's prerequisites intact.
GIT_INDEPENDENT_COMPONENTS = {"config", "service"}


@dataclass(slots=True)
class InstanceReport:
    """Outcome of converging one instance."""

    name: str
    status: str = "converged"
    git: str = "skipped"
    failed_component: str | None = None
    failed_step: str | None = None
    error: str | None = None
    git_error: str | None = None
    git_failed_step: str | None = None
    changes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        """Return ``True`` when a mandatory step failed."""
        return self.status == "failed"

    def record_failure(self, exc: ConvergenceError) -> None:
        """Mark the mandatory pipeline as failed at *exc*'s step."""
        self.status = "failed"
        self.failed_component = exc.component
        self.failed_step = exc.step
        self.error = exc.message

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "status": self.status,
            "git": self.git,
            "failed_component": self.failed_component,
            "failed_step": self.failed_step,
            "error": self.error,
            "git_failed_step": self.git_failed_step,
            "git_error": self.git_error,
            "changes": list(self.changes),
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class ConvergenceReport:
    """Aggregated outcome of a convergence run."""

    instances: list[InstanceReport] = field(default_factory=list)
    shared_changes: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def changed(self) -> int:
        """Return the number of changes applied (or planned in dry-run)."""
        return len(self.shared_changes) + sum(len(report.changes) for report in self.instances)

    @property
    def failed(self) -> list[str]:
        """Return names of instances whose mandatory steps failed."""
        return [report.name for report in self.instances if report.failed]

    @property
    def git_failed(self) -> list[str]:
        """Return names of instances whose git subgraph failed."""
        return [report.name for report in self.instances if report.git == "failed"]

    @property
    def exit_code(self) -> ExitCode:
        """Return the process exit code; git-only failures do not count."""
        return ExitCode.PROVIDER if self.failed else ExitCode.OK

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "dry_run": self.dry_run,
            "changed": self.changed,
            "shared_changes": list(self.shared_changes),
            "failed": self.failed,
            "git_failed": self.git_failed,
            "instances": [report.to_dict() for report in self.instances],
        }


class ConvergenceEngine:
    """Coordinator applying every component to every instance."""

    def __init__(
        self,
        config: AppConfig,
        *,
        host: SystemHost,
        templates: TemplateEngine,
        locks: LockManager,
        systemd: SystemdProvider,
        max_workers: int | None = None,
    ) -> None:
        """Store collaborators shared by all instance pipelines."""
        self._config = config
        self._host = host
        self._templates = templates
        self._locks = locks
        self._systemd = systemd
        self._max_workers = max(1, max_workers or config.workers)

    def converge(
        self,
        registry: RegistryState,
        *,
        dry_run: bool = False,
        op: OperationScope | None = None,
    ) -> ConvergenceReport:
        """Converge every instance of *registry* and return the report."""
        report = ConvergenceReport(dry_run=dry_run)
        if dry_run:
            self._run(registry, report, op)
            return report
        with self._locks.global_lock() as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            self._run(registry, report, op)
        return report

    # ------------------------------------------------------------------
    def _run(
        self,
        registry: RegistryState,
        report: ConvergenceReport,
        op: OperationScope | None,
    ) -> None:
        report.shared_changes.extend(self._ensure_shared_directories(registry, report.dry_run))
        if op is not None:
            op.add_step("shared-directories", detail={"changes": report.shared_changes})
        report.instances.extend(self._fan_out(registry.instances, report.dry_run))
        if op is not None:
            for instance_report in report.instances:
                op.add_step(
                    f"instance.{instance_report.name}",
                    status="error" if instance_report.failed else "success",
                    detail=instance_report.to_dict(),
                )

    def _ensure_shared_directories(self, registry: RegistryState, dry_run: bool) -> list[str]:
        specs = [shared_dir_spec(self._config.config_dir)]
        if registry.git_enabled:
            specs.append(shared_dir_spec(self._config.git_root))
        plan = plan_directories(specs, self._host)
        return apply_directory_plan(plan, self._host, dry_run=dry_run)

    def _fan_out(
        self,
        instances: Sequence[EffectiveInstance],
        dry_run: bool,
    ) -> list[InstanceReport]:
        if not instances:
            return []
        workers = min(self._max_workers, len(instances))
        if workers == 1:
            return [self._converge_isolated(instance, dry_run) for instance in instances]

        results: list[InstanceReport | None] = [None] * len(instances)
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_index: dict[concurrent.futures.Future[InstanceReport], int] = {}
            for index, instance in enumerate(instances):
                future = executor.submit(self._converge_isolated, instance, dry_run)
                future_to_index[future] = index

            for future in concurrent.futures.as_completed(future_to_index):
                results[future_to_index[future]] = future.result()

        return [result for result in results if result is not None]

    def _converge_isolated(self, instance: EffectiveInstance, dry_run: bool) -> InstanceReport:
        report = InstanceReport(name=instance.name)
        try:
            if dry_run:
                self.converge_instance(instance, report, dry_run=True)
            else:
                with self._locks.instance_lock(instance.name):
                    self.converge_instance(instance, report, dry_run=False)
        except LockTimeoutError as exc:
            report.status = "failed"
            report.git = "not-run" if instance.manage_git else "skipped"
            report.failed_component = "engine"
            report.failed_step = "lock"
            report.error = str(exc)
        except Exception as exc:  # pragma: no cover - unexpected failure
            report.status = "failed"
            if instance.manage_git and report.git == "skipped":
                report.git = "not-run"
            report.failed_component = "engine"
            report.failed_step = "unexpected"
            report.error = f"Unexpected error: {exc!r}"
            report.warnings.append(traceback.format_exc())
        return report

    def converge_instance(
        self,
        instance: EffectiveInstance,
        report: InstanceReport,
        *,
        dry_run: bool = False,
    ) -> None:
        """Run the pipeline for one instance, filling in *report*."""
        git_allowed = True
        try:
            self._converge_mandatory(instance, report, dry_run)
        except ConvergenceError as exc:
            report.record_failure(exc)
            git_allowed = exc.component in GIT_INDEPENDENT_COMPONENTS

        if not instance.manage_git:
            report.git = "skipped"
            return
        if not git_allowed:
            report.git = "not-run"
            return
        try:
            report.changes.extend(self._converge_git(instance, dry_run))
        except ConvergenceError as exc:
            report.git = "failed"
            report.git_failed_step = exc.step
            report.git_error = exc.message
        else:
            report.git = "converged"

    def _converge_mandatory(
        self,
        instance: EffectiveInstance,
        report: InstanceReport,
        dry_run: bool,
    ) -> None:
        identity_plan = plan_identity(
            instance,
            inspect_identity(instance, self._host),
            shell=self._config.accounts.shell,
        )
        report.warnings.extend(identity_plan.warnings)
        report.changes.extend(
            apply_identity_plan(
                identity_plan,
                self._host,
                self._locks,
                gid_base=self._config.accounts.gid_base,
                dry_run=dry_run,
            )
        )

        directory_plan = plan_directories(
            [data_dir_spec(instance)],
            self._host,
            instance=instance.name,
        )
        report.changes.extend(
            apply_directory_plan(
                directory_plan,
                self._host,
                instance=instance.name,
                dry_run=dry_run,
            )
        )

        config_plan = plan_config_file(instance, self._templates, self._host)
        config_result = apply_config_plan(config_plan, self._host, dry_run=dry_run)
        report.changes.extend(config_result.applied)

        service_plan = self._systemd.plan(
            instance,
            config_changed=config_result.content_changed,
        )
        report.changes.extend(self._systemd.apply(service_plan, dry_run=dry_run))

    def _converge_git(self, instance: EffectiveInstance, dry_run: bool) -> list[str]:
        git = self._config.git
        hook_content = render_hook(instance, self._templates, git)
        try:
            status = inspect_git(instance, self._host, git, hook_content)
        except (CommandError, OSError, LookupError) as exc:
            raise GitStepError(str(exc), instance=instance.name, step="inspect") from exc
        plan = plan_git(instance, status, git, hook_content)
        return apply_git_plan(plan, self._host, git, dry_run=dry_run)


__all__ = ["ConvergenceEngine", "ConvergenceReport", "InstanceReport"]
