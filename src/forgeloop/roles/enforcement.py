"""EnforcementEngine: inject mandatory agent tasks into workflow plans."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from forgeloop.agents.types import AgentRole
from forgeloop.orchestration.context import SharedState, WorkflowContext
from forgeloop.orchestration.plan import WorkflowPlan, WorkflowTask
from forgeloop.roles.registry import RoleRegistry
from forgeloop.roles.types import EnforcementRule, EnforcementTiming, EnforcementTrigger

logger = logging.getLogger(__name__)

ENFORCED_TASK_COMPLEXITY = 0.3

_CODE_WORDS = re.compile(
    r"\b(implement\w*|modif\w*|refactor\w*|fix\w*|chang\w*|updat\w*|add\w*|creat\w*|rewrit\w*|edit\w*|build\w*)\b",
    re.IGNORECASE,
)
_TEST_WORDS = re.compile(r"\btest\w*\b", re.IGNORECASE)
_SECURITY_WORDS = re.compile(
    r"\b(security|secure|vulnerab\w*|auth\w*|secret\w*|credential\w*|injection|xss|csrf)\b",
    re.IGNORECASE,
)

_CODE_ROLES = {AgentRole.THINKER, AgentRole.REFACTORING}

_ROLE_TASKS = {
    AgentRole.SECURITY: "Audit the changes for security vulnerabilities",
    AgentRole.REVIEWER: "Review the changes for correctness and code quality",
    AgentRole.TESTER: "Run the test suite and add tests for the changed behaviour",
    AgentRole.FINDER: "Locate the files and symbols relevant to the work",
    AgentRole.LIBRARIAN: "Gather the documentation relevant to the work",
    AgentRole.THINKER: "Design the approach before implementation",
    AgentRole.REFACTORING: "Clean up the code touched by the work",
    AgentRole.RUSH: "Apply quick follow-up fixes",
    AgentRole.GENERAL: "Follow up on the work",
}


@dataclass
class EnforcedAgent:
    role: AgentRole
    task: WorkflowTask
    when: EnforcementTiming
    rule: EnforcementRule


@dataclass
class EnforcementResult:
    triggered: bool
    agents_to_add: list[EnforcedAgent] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class EnforcementEngine:
    """Evaluates registry rules plus ad hoc ones against a plan.

    ``skip_enforcement`` turns every check into a no-op, which dry runs use
    to show the planner's raw output.
    """

    def __init__(
        self,
        registry: RoleRegistry,
        *,
        custom_rules: list[EnforcementRule] | None = None,
        skip_enforcement: bool = False,
    ) -> None:
        self._registry = registry
        self._custom: list[EnforcementRule] = list(custom_rules or [])
        self._skip = skip_enforcement

    def add_rule(self, rule: EnforcementRule) -> None:
        self._custom.append(rule)

    def remove_rule(self, trigger: EnforcementTrigger, role: AgentRole) -> bool:
        before = len(self._custom)
        self._custom = [r for r in self._custom if not (r.trigger is trigger and r.role is role)]
        return len(self._custom) != before

    def all_rules(self) -> list[EnforcementRule]:
        return [*self._registry.enforcement_rules(), *self._custom]

    def detect_triggers(self, plan: WorkflowPlan) -> set[EnforcementTrigger]:
        triggers = {EnforcementTrigger.ALWAYS}
        texts = [plan.original_task, plan.description, *(t.description for t in plan.tasks)]
        roles = set(plan.roles())

        if roles & _CODE_ROLES or any(_CODE_WORDS.search(t) for t in texts):
            triggers.add(EnforcementTrigger.CODE_MODIFICATION)
            triggers.add(EnforcementTrigger.FILE_WRITE)
        if AgentRole.TESTER in roles or any(_TEST_WORDS.search(t) for t in texts):
            triggers.add(EnforcementTrigger.TEST_EXECUTION)
        if AgentRole.SECURITY in roles or any(_SECURITY_WORDS.search(t) for t in texts):
            triggers.add(EnforcementTrigger.SECURITY_SCAN)
        return triggers

    def check_enforcement(
        self, plan: WorkflowPlan, context: WorkflowContext | None = None
    ) -> EnforcementResult:
        if self._skip:
            return EnforcementResult(triggered=False)

        triggers = self.detect_triggers(plan)
        present = set(plan.roles())
        shared = context.shared_state if context is not None else SharedState()
        taken_ids = {t.id for t in plan.tasks}
        result = EnforcementResult(triggered=False)

        for rule in self.all_rules():
            if rule.trigger not in triggers:
                continue
            if rule.role in present:
                logger.debug("Enforcement skipped, %s already in plan", rule.role.value)
                continue
            if rule.condition is not None:
                try:
                    if not rule.condition(shared):
                        continue
                except Exception as e:
                    logger.warning("Enforcement condition for %s failed: %s", rule.role.value, e)
                    result.warnings.append(f"Condition for {rule.role.value} failed: {e}")
                    continue
            if rule.require_approval:
                result.warnings.append(f"{rule.role.value} task requires approval before it runs")

            task = self._make_task(rule.role, plan, taken_ids)
            taken_ids.add(task.id)
            present.add(rule.role)
            result.agents_to_add.append(EnforcedAgent(rule.role, task, rule.when, rule))
            logger.info(
                "Enforcing %s (%s, trigger=%s) on plan %s",
                rule.role.value, rule.when.value, rule.trigger.value, plan.id,
            )

        result.triggered = bool(result.agents_to_add)
        return result

    def _make_task(self, role: AgentRole, plan: WorkflowPlan, taken: set[str]) -> WorkflowTask:
        task_id = f"enforced-{role.value}"
        n = 2
        while task_id in taken:
            task_id = f"enforced-{role.value}-{n}"
            n += 1
        subject = plan.tasks[0].description if plan.tasks else plan.original_task
        return WorkflowTask(
            id=task_id,
            description=f"{_ROLE_TASKS[role]} for: {subject}",
            suggested_role=role,
            complexity=ENFORCED_TASK_COMPLEXITY,
            parallelizable=False,
        )

    def enforce(self, plan: WorkflowPlan, context: WorkflowContext | None = None) -> WorkflowPlan:
        """A new plan with enforced tasks placed and wired into the dependency graph."""
        result = self.check_enforcement(plan, context)
        if not result.agents_to_add:
            return plan.model_copy(deep=True)

        tasks = [t.model_copy(deep=True) for t in plan.tasks]
        original_ids = [t.id for t in tasks]
        before: list[WorkflowTask] = []
        after: list[WorkflowTask] = []
        before_review: list[WorkflowTask] = []

        for agent in result.agents_to_add:
            task = agent.task
            if agent.when is EnforcementTiming.BEFORE:
                before.append(task)
            elif agent.when is EnforcementTiming.BEFORE_REVIEW:
                before_review.append(task)
            else:
                task.depends_on = list(original_ids)
                after.append(task)

        # Placed last so an enforced reviewer is already in position
        for task in before_review:
            if not (self._insert_before_review(tasks, task) or self._insert_before_review(after, task)):
                task.depends_on = list(original_ids)
                after.append(task)

        if before:
            before_ids = [t.id for t in before]
            roots = [
                t for t in tasks
                if t.id in original_ids and not any(d in original_ids for d in t.depends_on)
            ]
            for root in roots:
                root.depends_on.extend(before_ids)

        return plan.model_copy(update={"tasks": [*before, *tasks, *after]})

    @staticmethod
    def _insert_before_review(tasks: list[WorkflowTask], task: WorkflowTask) -> bool:
        for index, existing in enumerate(tasks):
            if existing.suggested_role is AgentRole.REVIEWER:
                task.depends_on = list(existing.depends_on)
                existing.depends_on.append(task.id)
                tasks.insert(index, task)
                return True
        return False

    def would_trigger(self, plan: WorkflowPlan, role: AgentRole) -> bool:
        return any(a.role is role for a in self.check_enforcement(plan).agents_to_add)

    def required_agents(
        self, plan: WorkflowPlan, context: WorkflowContext | None = None
    ) -> list[AgentRole]:
        return [a.role for a in self.check_enforcement(plan, context).agents_to_add]


def default_enforcement_rules(*, security_review: bool = False) -> list[EnforcementRule]:
    """Rules installed by the CLI: code changes get reviewed, optionally audited first."""
    rules = [
        EnforcementRule(
            trigger=EnforcementTrigger.CODE_MODIFICATION,
            role=AgentRole.REVIEWER,
            when=EnforcementTiming.AFTER,
            description="Code changes are reviewed before the workflow ends",
        ),
    ]
    if security_review:
        rules.append(
            EnforcementRule(
                trigger=EnforcementTrigger.CODE_MODIFICATION,
                role=AgentRole.SECURITY,
                when=EnforcementTiming.BEFORE_REVIEW,
                description="Security audit runs ahead of review",
            )
        )
    return rules
