"""PhaseOrchestrator: implement, verify, review and fix with one agent CLI.

Hierarchy:
    Level 0: CLI entry (cli.py)
    Level 1: PhaseOrchestrator, owns the allow rules for the process lifetime
    Level 2: OrchestrationRun, per-``execute()`` state (tracked files,
             counters, phase results)
    Level 3: AgentBackend invocations, one agent process per phase, with a
             PermissionGateway listening for the whole run
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import replace
from typing import Any, AsyncIterator

from taskrelay.adapters.base import AgentBackend, InvokeOptions
from taskrelay.classifier import (
    REVIEW_VERDICT_SCHEMA,
    detect_planning_without_implementation,
    infer_failed_agent,
)
from taskrelay.config.schema import TaskRelayConfig
from taskrelay.coordinator.context import (
    RETRY_INSTRUCTION_SUFFIXES,
    ContextComposer,
    DefaultContextComposer,
    PhaseContext,
)
from taskrelay.coordinator.profiles import PhaseProfile, get_profile
from taskrelay.coordinator.tasks import parse_completed_tasks
from taskrelay.errors import AgentInvocationError, PlanStoreError
from taskrelay.permissions.gateway import PermissionGateway
from taskrelay.permissions.prompt import PermissionPrompter
from taskrelay.permissions.rules import AllowRuleSet, build_allowed_tools
from taskrelay.permissions.store import PermissionStore
from taskrelay.plans import Plan, PlanStore
from taskrelay.protocol.models import (
    ROLE_LABELS,
    ExecutorOutput,
    FailureDetails,
    OrchestrationRun,
    PhaseResult,
    PlanInfo,
    Step,
    Verdict,
)
from taskrelay.workspace.repository import Repository

logger = logging.getLogger(__name__)


class PhaseOrchestrator:
    """Runs one plan through the fixed phase sequence.

    Main flow of ``execute()``:
    1. Start the permission gateway (Claude only, when enabled).
    2. Implement, retrying with firmer instructions while the implementer
       only plans and leaves the repository untouched.
    3. Verify (``tester`` in the normal profile; skipped in simple).
    4. Review; on NEEDS_FIXES alternate fixer and review up to
       ``max_fix_iterations`` fixer runs.
    5. Mark the tasks the implementer reported complete, unless the run
       failed or the review stayed unresolved.

    A FAILED report from any agent ends the run at once.
    """

    def __init__(
        self,
        backend: AgentBackend,
        config: TaskRelayConfig,
        *,
        plan_store: PlanStore,
        repository: Repository,
        composer: ContextComposer | None = None,
        prompter: PermissionPrompter | None = None,
        permission_store: PermissionStore | None = None,
    ) -> None:
        self._backend = backend
        self._config = config
        self._plan_store = plan_store
        self._repository = repository
        self._composer = composer or DefaultContextComposer()
        self._prompter = prompter
        self._permission_store = permission_store
        self._profile: PhaseProfile = get_profile(config.executor.profile)
        self._disallowed_tools = self._initial_disallowed_tools()
        self._rules = AllowRuleSet.from_tool_specs(self._initial_allowed_tools())

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def rules(self) -> AllowRuleSet:
        return self._rules

    @property
    def profile(self) -> PhaseProfile:
        return self._profile

    async def execute(
        self,
        prompt_content: str,
        plan_info: PlanInfo,
    ) -> ExecutorOutput | str | None:
        """Run all phases for *plan_info*.

        Returns ``None`` / the final text / an ``ExecutorOutput`` for capture
        modes ``none`` / ``result`` / ``all``. A failed run always returns an
        ``ExecutorOutput`` with ``success=False``.
        """
        run = OrchestrationRun()
        work_dir = await self._repository.get_root()
        plan = self._read_plan(plan_info)

        async with self._permission_scope(run, work_dir) as mcp_config_path:
            outcome = await self._run_phases(run, prompt_content, plan_info, plan, work_dir, mcp_config_path)

        newly_completed, unresolved, verdict = outcome
        self._mark_tasks(run, plan_info, newly_completed, unresolved)
        output = self._build_output(run, newly_completed, verdict)

        if run.failure_details is not None:
            return output
        if plan_info.capture_output == "result":
            return output.content
        if plan_info.capture_output == "all":
            return output
        return None

    # ------------------------------------------------------------------
    # Phase sequence
    # ------------------------------------------------------------------

    async def _run_phases(
        self,
        run: OrchestrationRun,
        prompt_content: str,
        plan_info: PlanInfo,
        plan: Plan,
        work_dir: str,
        mcp_config_path: str | None,
    ) -> tuple[list[str], bool, Verdict | None]:
        ctx = PhaseContext(
            context=prompt_content,
            plan_id=plan_info.plan_id if plan_info.has_plan_context else "",
            plan_file_path=plan_info.plan_file_path if plan_info.has_plan_context else "",
            completed_before=plan.completed_titles,
            pending=plan.pending_titles,
        )

        implementer = await self._implement(run, ctx, work_dir, mcp_config_path)
        if implementer.failed:
            return [], False, None
        ctx.implementer_output = implementer.raw_output
        ctx.newly_completed = parse_completed_tasks(implementer.raw_output, ctx.pending)
        if ctx.newly_completed:
            logger.info("Implementer reported %d completed task(s)", len(ctx.newly_completed))

        if self._profile.verify_role:
            verified = await self._run_phase(run, self._profile.verify_role, ctx, work_dir, mcp_config_path)
            if verified.failed:
                return [], False, None
            ctx.tester_output = verified.raw_output

        review = await self._review(run, ctx, work_dir, mcp_config_path)
        if review.failed:
            return [], False, None

        max_fixes = self._config.orchestration.max_fix_iterations
        while review.verdict is Verdict.NEEDS_FIXES:
            if run.fix_iterations >= max_fixes:
                logger.warning(
                    "Maximum fix iterations reached (%d) and reviewer still reports NEEDS_FIXES; "
                    "returning the last review output.",
                    max_fixes,
                )
                return ctx.newly_completed, True, review.verdict
            run.fix_iterations += 1
            logger.info("Review requested fixes; running fixer (iteration %d/%d)", run.fix_iterations, max_fixes)
            ctx.previous_review = review.raw_output
            fixer = await self._run_phase(run, self._profile.fix_role, ctx, work_dir, mcp_config_path)
            if fixer.failed:
                return [], False, None
            ctx.fixer_output = fixer.raw_output
            review = await self._review(run, ctx, work_dir, mcp_config_path)
            if review.failed:
                return [], False, None

        return ctx.newly_completed, False, review.verdict

    async def _implement(
        self,
        run: OrchestrationRun,
        ctx: PhaseContext,
        work_dir: str,
        mcp_config_path: str | None,
    ) -> PhaseResult:
        """Implementer phase with the planning-without-implementation guard."""
        attempts = self._config.orchestration.max_implementer_attempts
        planning_only: list[int] = []
        before = await self._repository.capture_state()

        for attempt in range(1, attempts + 1):
            ctx.retry_suffix = _retry_suffix(attempt)
            result, failure = await self._invoke(run, "implementer", ctx, work_dir, mcp_config_path)
            if result.failed:
                run.append(result, failure)
                return result

            after = await self._repository.capture_state()
            detection = detect_planning_without_implementation(result.raw_output, before, after)
            if detection.repository_status_unavailable:
                logger.warning(
                    "Could not verify repository state after implementer attempt %d/%d; "
                    "skipping planning-only detection for this attempt.",
                    attempt, attempts,
                )

            if not detection.detected:
                run.append(result)
                if planning_only and not detection.repository_status_unavailable:
                    retries = len(planning_only)
                    logger.info(
                        "Implementer produced repository changes after %d planning-only attempt%s "
                        "(resolved on attempt %d/%d).",
                        retries, "" if retries == 1 else "s", attempt, attempts,
                    )
                return result

            planning_only.append(attempt)
            indicators = " | ".join(line[:120] for line in detection.planning_indicators[:2])
            logger.warning(
                "Implementer attempt %d/%d produced planning output without repository changes "
                "(commit changed: %s, working tree changed: %s). Indicators: %s",
                attempt, attempts, detection.commit_changed, detection.working_tree_changed,
                indicators or "<no indicators captured>",
            )

            if attempt < attempts:
                run.append(result)
                run.planning_retries += 1
                logger.info(
                    "Retrying implementer with more explicit instructions (attempt %d/%d)...",
                    attempt + 1, attempts,
                )
                before = after
                continue

            if self._config.orchestration.on_planning_retries_exhausted == "fail":
                failed = replace(result, failed=True)
                run.append(
                    failed,
                    FailureDetails(
                        requirements="Implement the pending tasks by changing repository files.",
                        problems=(
                            f"Implementer produced planning output without repository changes "
                            f"after {attempts} attempts."
                        ),
                        source_agent="implementer",
                    ),
                )
                return failed

            logger.warning(
                "Implementer planned without executing changes after exhausting %d attempts; "
                "continuing to %s.",
                attempts, self._profile.verify_role or self._profile.review_role,
            )
            run.append(result)
            return result

        raise AssertionError("unreachable: implementer loop always returns")

    async def _review(
        self,
        run: OrchestrationRun,
        ctx: PhaseContext,
        work_dir: str,
        mcp_config_path: str | None,
    ) -> PhaseResult:
        role = self._profile.review_role
        result, failure = await self._invoke(run, role, ctx, work_dir, mcp_config_path)
        if result.failed:
            run.append(result, failure)
            return result

        verdict = self._backend.parse_verdict(result.raw_output)
        if verdict is Verdict.UNKNOWN:
            verdict, failure = self._apply_unknown_verdict_policy(role)
            if failure is not None:
                result = replace(result, failed=True, verdict=Verdict.UNKNOWN)
                run.append(result, failure)
                return result
        result = replace(result, verdict=verdict)
        run.append(result)
        logger.info("%s verdict: %s", ROLE_LABELS[role], verdict.value)
        return result

    def _apply_unknown_verdict_policy(self, role: str) -> tuple[Verdict, FailureDetails | None]:
        policy = self._config.orchestration.unknown_verdict
        if policy == "needs_fixes":
            logger.warning("%s produced no verdict; treating as NEEDS_FIXES", ROLE_LABELS[role])
            return Verdict.NEEDS_FIXES, None
        if policy == "fail":
            logger.warning("%s produced no verdict; failing the run", ROLE_LABELS[role])
            return Verdict.UNKNOWN, FailureDetails(
                requirements="Review output must end with a VERDICT line.",
                problems=f"{ROLE_LABELS[role]} did not report ACCEPTABLE or NEEDS_FIXES.",
                source_agent=role,
            )
        logger.warning("%s produced no verdict; treating as ACCEPTABLE", ROLE_LABELS[role])
        return Verdict.ACCEPTABLE, None

    async def _run_phase(
        self,
        run: OrchestrationRun,
        role: str,
        ctx: PhaseContext,
        work_dir: str,
        mcp_config_path: str | None,
    ) -> PhaseResult:
        result, failure = await self._invoke(run, role, ctx, work_dir, mcp_config_path)
        run.append(result, failure)
        return result

    async def _invoke(
        self,
        run: OrchestrationRun,
        role: str,
        ctx: PhaseContext,
        work_dir: str,
        mcp_config_path: str | None,
    ) -> tuple[PhaseResult, FailureDetails | None]:
        """Run one agent process and classify its output. Never raises for agent errors."""
        prompt = self._composer.compose(role, ctx)
        label = ROLE_LABELS.get(role, role)
        logger.info("Running %s step...", label.lower())
        try:
            invocation = await self._backend.invoke(prompt, work_dir, self._options(role, run, mcp_config_path))
        except (AgentInvocationError, OSError) as exc:
            logger.error("%s step failed: %s", label, exc)
            return PhaseResult(role, str(exc), failed=True), FailureDetails(
                requirements="",
                problems=str(exc),
                source_agent=role,
            )

        run.track_files(invocation.touched_paths)
        text = invocation.raw_final_message
        report = self._backend.parse_failure(text)
        source = role
        if not report.failed and invocation.failure_message:
            report = self._backend.parse_failure(invocation.failure_message)
            source = infer_failed_agent(invocation.failure_message, role)
        if report.failed:
            logger.warning("%s reported a failure: %s", label, report.summary or "FAILED")
            return PhaseResult(role, text, failed=True), report.to_details(source)
        return PhaseResult(role, text), None

    def _options(self, role: str, run: OrchestrationRun, mcp_config_path: str | None) -> InvokeOptions:
        permissions = self._config.permissions
        return InvokeOptions(
            role=role,
            model=self._config.executor.model or None,
            initial_timeout=self._config.timeouts.initial_seconds,
            inactivity_timeout=self._config.timeouts.inactivity_seconds,
            allowed_tools=self._rules.to_tool_specs(),
            disallowed_tools=list(self._disallowed_tools),
            allow_all_tools=permissions.allow_all_tools,
            mcp_config_path=mcp_config_path,
            output_schema=self._output_schema(role),
            reasoning_level=self._config.codex.reasoning_level or None,
            search=self._config.codex.search,
            tracked_files=run.tracked_files,
        )

    def _output_schema(self, role: str) -> dict[str, Any] | None:
        if self._config.orchestration.structured_review and role == self._profile.review_role:
            return REVIEW_VERDICT_SCHEMA
        return None

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def _initial_disallowed_tools(self) -> list[str]:
        disallowed = list(self._config.permissions.disallowed_tools)
        if self._permission_store is not None:
            disallowed += [d for d in self._permission_store.load_denied() if d not in disallowed]
        return disallowed

    def _initial_allowed_tools(self) -> list[str]:
        permissions = self._config.permissions
        persisted = self._permission_store.load_allowed() if self._permission_store else []
        return build_allowed_tools(
            configured=permissions.allowed_tools,
            persisted=persisted,
            disallowed=self._disallowed_tools,
            include_defaults=permissions.include_default_tools,
        )

    def _gateway_enabled(self) -> bool:
        permissions = self._config.permissions
        return (
            self._backend.supports_permission_gateway
            and permissions.enabled
            and not permissions.allow_all_tools
        )

    @contextlib.asynccontextmanager
    async def _permission_scope(self, run: OrchestrationRun, work_dir: str) -> AsyncIterator[str | None]:
        if not self._gateway_enabled():
            yield None
            return

        permissions = self._config.permissions
        # Without an operator every unmatched request gets default_response.
        gateway = PermissionGateway(
            self._rules,
            self._prompter if self._config.interactive else None,
            work_dir=work_dir,
            tracked_files=run.tracked_files,
            store=self._permission_store,
            prompt_timeout=permissions.prompt_timeout_seconds,
            default_approve=permissions.default_response == "yes",
            auto_approve_created_file_deletion=permissions.auto_approve_created_file_deletion,
        )
        started = False
        try:
            await gateway.start()
            started = True
        except OSError as exc:
            logger.warning("Could not start permission gateway (%s); continuing without it", exc)

        if not started:
            yield None
            return
        try:
            yield str(gateway.mcp_config_path)
        finally:
            await gateway.close()

    # ------------------------------------------------------------------
    # Plan and results
    # ------------------------------------------------------------------

    def _read_plan(self, plan_info: PlanInfo) -> Plan:
        if not plan_info.has_plan_context:
            return Plan()
        try:
            return self._plan_store.read_plan(plan_info.plan_file_path)
        except PlanStoreError as exc:
            logger.warning("Could not read plan %s: %s", plan_info.plan_file_path, exc)
            return Plan()

    def _mark_tasks(
        self,
        run: OrchestrationRun,
        plan_info: PlanInfo,
        titles: list[str],
        unresolved: bool,
    ) -> None:
        if run.failure_details is not None:
            logger.warning("Skipping automatic task completion marking due to executor failure.")
            return
        if unresolved and not self._config.orchestration.mark_tasks_on_unresolved_review:
            logger.warning("Skipping automatic task completion marking due to unresolved review issues.")
            return
        if not titles or not plan_info.has_plan_context:
            return
        try:
            self._plan_store.mark_tasks_done(plan_info.plan_file_path, titles)
        except PlanStoreError as exc:
            logger.warning("Could not mark tasks done in %s: %s", plan_info.plan_file_path, exc)

    def _build_output(
        self,
        run: OrchestrationRun,
        completed: list[str],
        verdict: Verdict | None,
    ) -> ExecutorOutput:
        backend_label = getattr(self._backend, "display_name", self._backend.name.title())
        steps: list[Step] = []
        seen: dict[str, int] = {}
        for result in run.results:
            seen[result.role] = seen.get(result.role, 0) + 1
            title = f"{backend_label} {ROLE_LABELS.get(result.role, result.role)}"
            if seen[result.role] > 1:
                title += f" #{seen[result.role]}"
            steps.append(Step(title=title, body=result.raw_output))

        if run.failure_details is not None:
            content = run.last_output()
        else:
            content = run.last_output(self._profile.review_role) or run.last_output()

        metadata = {
            "phase": "implementation",
            "backend": self._backend.name,
            "profile": self._profile.name,
            "verdict": verdict.value if verdict else None,
            "fixIterations": run.fix_iterations,
            "planningRetries": run.planning_retries,
            "completedTasks": list(completed),
            "trackedFiles": sorted(run.tracked_files),
            "startedAt": run.started_at,
        }
        return ExecutorOutput(
            content=content,
            steps=steps,
            metadata=metadata,
            success=run.failure_details is None,
            failure_details=run.failure_details,
        )


def _retry_suffix(attempt: int) -> str:
    if attempt <= 1:
        return ""
    return RETRY_INSTRUCTION_SUFFIXES[min(attempt - 2, len(RETRY_INSTRUCTION_SUFFIXES) - 1)]
