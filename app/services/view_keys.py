"""Cached read-model keys and the mutation → view dependency table.

View keys are tuples; invalidating a key also invalidates every cached key it
is a prefix of, so ``("/api/payments",)`` covers ``("/api/payments", 12)``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Mapping

ViewKey = tuple


class Keys:
    """Builders for every view key the service caches or invalidates."""

    PROJECTS = ("/api/projects",)
    WORK_REQUESTS = ("/api/work-requests",)
    CONTRACTS = ("/api/contracts",)
    CONTRACTORS = ("/api/business-workers/contractors",)
    DASHBOARD = ("/api/dashboard",)
    BUDGET = ("/api/budget",)
    NOTIFICATIONS_COUNT = ("/api/notifications/count",)
    NOTIFICATIONS = ("/api/notifications",)
    TASKS = ("/api/tasks",)
    CURRENT_USER = ("/api/user",)
    PAYMENTS = ("/api/payments",)
    EARNINGS = ("/api/earnings",)
    INTEGRATED = ("/integrated",)

    @staticmethod
    def project(project_id: int) -> ViewKey:
        return ("/api/projects", project_id)

    @staticmethod
    def work_request(request_id: int) -> ViewKey:
        return ("/api/work-requests", request_id)

    @staticmethod
    def work_requests_by_project(project_id: int) -> ViewKey:
        return ("/api/work-requests", "byProject", project_id)

    @staticmethod
    def contract(contract_id: int) -> ViewKey:
        return ("/api/contracts", contract_id)

    @staticmethod
    def contractors_by_business(business_id: int) -> ViewKey:
        return ("/api/business-workers/contractors", business_id)

    @staticmethod
    def task(task_id: int) -> ViewKey:
        return ("/api/tasks", task_id)

    @staticmethod
    def task_submissions(task_id: int) -> ViewKey:
        return ("/api/tasks", task_id, "submissions")

    @staticmethod
    def user(user_id: int) -> ViewKey:
        return ("/api/users", user_id)

    @staticmethod
    def payment(payment_id: int) -> ViewKey:
        return ("/api/payments", payment_id)

    @staticmethod
    def budget(business_id: int) -> ViewKey:
        return ("/api/budget", business_id)

    @staticmethod
    def earnings(contractor_id: int) -> ViewKey:
        return ("/api/earnings", contractor_id)


@dataclass(frozen=True)
class Dependency:
    """Base keys always invalidated, plus detail keys built from context fields."""

    base: tuple[ViewKey, ...]
    by_context: Mapping[str, tuple[Callable[[int], ViewKey], ...]] = field(default_factory=dict)

    def keys_for(self, context: Mapping[str, object]) -> frozenset[ViewKey]:
        keys = set(self.base)
        for name, builders in self.by_context.items():
            value = context.get(name)
            if value is None:
                continue
            keys.update(builder(value) for builder in builders)
        return frozenset(keys)


_WORK_REQUEST = Dependency(
    base=(Keys.WORK_REQUESTS, Keys.DASHBOARD, Keys.NOTIFICATIONS_COUNT, Keys.BUDGET, Keys.INTEGRATED),
    by_context={
        "id": (Keys.work_request,),
        "projectId": (Keys.work_requests_by_project, Keys.project),
    },
)

DEPENDENCIES: Mapping[str, Dependency] = {
    "payment.change": Dependency(
        base=(
            Keys.PAYMENTS,
            Keys.CONTRACTS,
            Keys.DASHBOARD,
            Keys.BUDGET,
            Keys.NOTIFICATIONS_COUNT,
            Keys.NOTIFICATIONS,
            Keys.INTEGRATED,
        ),
        by_context={
            "id": (Keys.payment,),
            "contractorId": (Keys.earnings,),
            "businessId": (Keys.budget,),
        },
    ),
    "contract.change": Dependency(
        base=(Keys.CONTRACTS, Keys.DASHBOARD, Keys.INTEGRATED),
        by_context={"id": (Keys.contract,)},
    ),
    "budget.change": Dependency(
        base=(Keys.BUDGET, Keys.DASHBOARD, Keys.INTEGRATED),
        by_context={"businessId": (Keys.budget,)},
    ),
    "user.change": Dependency(
        base=(Keys.CURRENT_USER, Keys.CONTRACTORS, Keys.INTEGRATED),
        by_context={
            "id": (Keys.user,),
            "businessId": (Keys.contractors_by_business,),
        },
    ),
    "workRequest.change": _WORK_REQUEST,
    "workRequest.create": _WORK_REQUEST,
    "project.change": Dependency(
        base=(Keys.PROJECTS, Keys.WORK_REQUESTS, Keys.DASHBOARD, Keys.INTEGRATED),
        by_context={"id": (Keys.project, Keys.work_requests_by_project)},
    ),
    "task.change": Dependency(
        base=(Keys.TASKS, Keys.DASHBOARD, Keys.NOTIFICATIONS_COUNT, Keys.BUDGET, Keys.INTEGRATED),
        by_context={"id": (Keys.task, Keys.task_submissions)},
    ),
}

MUTATION_KINDS = frozenset(DEPENDENCIES)


def keys_for(kind: str, context: Mapping[str, object] | None = None) -> frozenset[ViewKey]:
    """Return the view keys a mutation of ``kind`` makes stale."""

    try:
        dependency = DEPENDENCIES[kind]
    except KeyError:
        raise ValueError(f"Unknown mutation kind: {kind!r}") from None
    return dependency.keys_for(context or {})


__all__ = ["DEPENDENCIES", "Keys", "MUTATION_KINDS", "ViewKey", "keys_for"]
