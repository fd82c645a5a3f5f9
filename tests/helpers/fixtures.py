"""In-memory stand-ins for agent backends, repositories, plans and prompts."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from taskrelay import classifier
from taskrelay.adapters.base import InvocationResult, InvokeOptions
from taskrelay.permissions.prompt import PermissionDecision
from taskrelay.plans import Plan, PlanTask
from taskrelay.protocol.models import FailureReport, PermissionRequest, RepositoryState, Verdict

Response = str | InvocationResult | Exception


@dataclass
class Invocation:
    role: str
    prompt: str
    options: InvokeOptions


class FakeBackend:
    """Scripted agent: each role answers from its own queue.

    The last queued response for a role is repeated once the queue runs dry.
    """

    name = "claude"
    display_name = "Claude"

    def __init__(
        self,
        responses: dict[str, list[Response]] | None = None,
        *,
        supports_permission_gateway: bool = False,
    ) -> None:
        self.responses = {role: list(items) for role, items in (responses or {}).items()}
        self.supports_permission_gateway = supports_permission_gateway
        self.invocations: list[Invocation] = []

    @property
    def roles(self) -> list[str]:
        return [i.role for i in self.invocations]

    def prompts(self, role: str) -> list[str]:
        return [i.prompt for i in self.invocations if i.role == role]

    async def invoke(self, prompt: str, work_dir: str, options: InvokeOptions) -> InvocationResult:
        self.invocations.append(Invocation(options.role, prompt, options))
        queue = self.responses.get(options.role)
        if not queue:
            raise AssertionError(f"no scripted response for {options.role}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            return InvocationResult(raw_final_message=response, exit_code=0)
        return response

    def parse_line(self, line: str) -> list[Any]:
        return []

    def parse_verdict(self, text: str) -> Verdict:
        return classifier.parse_verdict(text)

    def parse_failure(self, text: str) -> FailureReport:
        return classifier.parse_failure(text)


class FakeRepository:
    """Repository whose snapshots come from a script.

    Without a script every snapshot differs from the previous one, so the
    implementer always appears to have changed files.
    """

    def __init__(self, root: str, states: list[RepositoryState | None] | None = None) -> None:
        self.root = root
        self._states = list(states) if states is not None else None
        self.captures = 0

    async def get_root(self) -> str:
        return self.root

    async def capture_state(self) -> RepositoryState | None:
        self.captures += 1
        if self._states is None:
            return RepositoryState(
                commit_hash="abc123",
                has_changes=True,
                status_output=" M src/app.py\n",
                diff_hash=f"diff-{self.captures}",
            )
        if len(self._states) > 1:
            return self._states.pop(0)
        return self._states[0] if self._states else None


def unchanged_state() -> RepositoryState:
    return RepositoryState(commit_hash="abc123", has_changes=False, status_output="", diff_hash=None)


@dataclass
class FakePlanStore:
    plan: Plan = field(default_factory=Plan)
    marked: list[tuple[str, list[str]]] = field(default_factory=list)

    def read_plan(self, path: str) -> Plan:
        return self.plan

    def mark_tasks_done(self, path: str, titles: list[str]) -> list[str]:
        self.marked.append((path, list(titles)))
        return list(titles)


def make_plan(*titles: str, done: tuple[str, ...] = ()) -> Plan:
    tasks = [PlanTask(title=t, done=t in done) for t in titles]
    return Plan(id="plan-1", title="Parser work", goal="Ship the parser", tasks=tasks)


class FakePrompter:
    """Answers prompts from a queue; with an empty queue it waits forever."""

    def __init__(self, *decisions: PermissionDecision, gate: asyncio.Event | None = None) -> None:
        self.decisions = list(decisions)
        self.gate = gate
        self.requests: list[PermissionRequest] = []
        self.active = 0
        self.max_active = 0

    async def prompt(self, request: PermissionRequest) -> PermissionDecision:
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0.01)
            if not self.decisions:
                await asyncio.Event().wait()
            return self.decisions.pop(0)
        finally:
            self.active -= 1
