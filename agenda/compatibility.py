"""
Employee/service compatibility.

An employee is compatible with a booking request only if they can perform
every selected service (intersection, not union).

If capabilities cannot be loaded, the resolver returns the unfiltered employee
list so the booking flow stays usable; the slot engine and the booking
pipeline still verify each chosen employee before anything is written.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence, TypeVar

from .core.errors import DataAccessError
from .models import Employee, Service

logger = logging.getLogger(__name__)

E = TypeVar("E")

Capabilities = Mapping[uuid.UUID, frozenset[uuid.UUID] | set[uuid.UUID]]


def filter_employees(
    selected_service_ids: Iterable[uuid.UUID],
    all_employees: Sequence[E],
    capabilities: Capabilities,
) -> list[E]:
    """
    Employees able to perform ALL selected services, in input order.

    `capabilities` maps employee id -> set of service ids. An empty selection
    returns the input list unchanged.
    """
    required = set(selected_service_ids)
    if not required:
        return list(all_employees)
    return [
        employee
        for employee in all_employees
        if required <= set(capabilities.get(employee.id, ()))
    ]


@dataclass
class EmployeeFilterResult:
    employees: list[Employee]
    selected_service_ids: list[uuid.UUID] = field(default_factory=list)
    degraded: bool = False

    @property
    def has_no_eligible_employees(self) -> bool:
        return bool(self.selected_service_ids) and not self.employees


async def resolve_eligible_employees(
    store,
    business_id: uuid.UUID,
    selected_service_ids: Sequence[uuid.UUID],
    all_employees: Optional[Sequence[Employee]] = None,
) -> EmployeeFilterResult:
    """Load capabilities from the store and filter; degrade to all employees on store failure."""
    if all_employees is None:
        all_employees = await store.list_employees(business_id, active_only=True)

    selected = list(selected_service_ids)
    if not selected:
        return EmployeeFilterResult(employees=list(all_employees))

    try:
        capabilities = await store.get_capabilities([e.id for e in all_employees])
    except DataAccessError:
        logger.warning(
            "Could not load employee capabilities for business %s; returning unfiltered list",
            business_id,
            exc_info=True,
        )
        return EmployeeFilterResult(employees=list(all_employees), selected_service_ids=selected, degraded=True)

    return EmployeeFilterResult(
        employees=filter_employees(selected, all_employees, capabilities),
        selected_service_ids=selected,
    )


@dataclass
class ServiceEmployeePair:
    """A selected service and the employee chosen for it while composing a booking."""
    service: Service
    employees: list[Employee]
    employee: Optional[Employee] = None

    @property
    def is_compatible(self) -> bool:
        return self.employee is not None and any(e.id == self.employee.id for e in self.employees)

    @property
    def disabled_reason(self) -> Optional[str]:
        if not self.employees:
            return f"No employee offers {self.service.name}"
        return None


def build_service_employee_pairs(
    services: Sequence[Service],
    employees: Sequence[Employee],
    capabilities: Capabilities,
    chosen: Optional[Mapping[uuid.UUID, uuid.UUID]] = None,
) -> list[ServiceEmployeePair]:
    """Candidate employees per service; `chosen` maps service id -> employee id."""
    chosen = chosen or {}
    by_id = {e.id: e for e in employees}
    pairs = []
    for service in services:
        candidates = filter_employees([service.id], employees, capabilities)
        pairs.append(
            ServiceEmployeePair(
                service=service,
                employees=candidates,
                employee=by_id.get(chosen.get(service.id)),
            )
        )
    return pairs
