"""
Tests for employee/service compatibility.

Run with: pytest tests/test_compatibility.py -v
"""

import uuid
from dataclasses import dataclass

from agenda.compatibility import (
    build_service_employee_pairs,
    filter_employees,
    resolve_eligible_employees,
)
from agenda.core.errors import DataAccessError
from tests.fakes import InMemoryAppointmentStore


@dataclass
class Person:
    """Minimal employee stand-in."""

    id: str
    name: str


HAIRCUT, BEARD, COLOR = "s-haircut", "s-beard", "s-color"

ANA = Person("e-ana", "Ana")
LUIS = Person("e-luis", "Luis")
SOFIA = Person("e-sofia", "Sofia")

CAPABILITIES = {
    ANA.id: {HAIRCUT, BEARD},
    LUIS.id: {HAIRCUT},
    SOFIA.id: {HAIRCUT, BEARD, COLOR},
}


# ============================================================================
# FILTER TESTS
# ============================================================================

class TestFilterEmployees:
    """Tests for the capability intersection filter."""

    def test_intersection_not_union(self):
        """An employee must offer every selected service, not just one."""
        result = filter_employees([HAIRCUT, BEARD], [ANA, LUIS, SOFIA], CAPABILITIES)
        assert result == [ANA, SOFIA]

    def test_single_service(self):
        """One selected service keeps everyone who offers it."""
        assert filter_employees([COLOR], [ANA, LUIS, SOFIA], CAPABILITIES) == [SOFIA]

    def test_empty_selection_returns_all_in_order(self):
        """No selection returns the input list unchanged."""
        employees = [SOFIA, LUIS, ANA]
        result = filter_employees([], employees, CAPABILITIES)
        assert result == employees
        assert result is not employees

    def test_preserves_input_order(self):
        """Filtering keeps the input order."""
        result = filter_employees([HAIRCUT], [SOFIA, LUIS, ANA], CAPABILITIES)
        assert result == [SOFIA, LUIS, ANA]

    def test_employee_without_capabilities_is_excluded(self):
        """An employee with no capabilities qualifies for nothing."""
        stranger = Person("e-x", "X")
        assert filter_employees([HAIRCUT], [stranger], CAPABILITIES) == []

    def test_result_is_subset_of_input(self):
        """The result never contains employees outside the input."""
        employees = [ANA, LUIS]
        result = filter_employees([HAIRCUT, BEARD, COLOR], employees, CAPABILITIES)
        assert result == []
        assert all(e in employees for e in result)


# ============================================================================
# RESOLVER TESTS
# ============================================================================

class FailingCapabilitiesStore(InMemoryAppointmentStore):
    """Store whose capability lookup fails."""

    async def get_capabilities(self, employee_ids):
        raise DataAccessError("capabilities table unavailable")


class TestResolveEligibleEmployees:
    """Tests for resolving eligible employees through the store."""

    async def test_filters_with_store_capabilities(self, salon):
        """Capabilities are loaded from the store."""
        result = await resolve_eligible_employees(
            salon.store, salon.business.id, [salon.haircut.id, salon.beard.id]
        )
        assert [e.id for e in result.employees] == [salon.ana.id]
        assert result.degraded is False
        assert result.has_no_eligible_employees is False

    async def test_inactive_employees_are_not_candidates(self, salon):
        """Inactive employees are never offered."""
        result = await resolve_eligible_employees(salon.store, salon.business.id, [salon.coloring.id])
        assert result.employees == []
        assert result.has_no_eligible_employees is True

    async def test_no_selection_is_not_reported_as_empty(self, salon):
        """An empty selection does not raise the no-eligible flag."""
        result = await resolve_eligible_employees(salon.store, salon.business.id, [])
        assert {e.id for e in result.employees} == {salon.ana.id, salon.luis.id}
        assert result.has_no_eligible_employees is False

    async def test_store_failure_degrades_to_unfiltered_list(self):
        """A store failure returns everyone, marked degraded."""
        business_id = uuid.uuid4()
        store = FailingCapabilitiesStore()
        result = await resolve_eligible_employees(store, business_id, [HAIRCUT, COLOR], all_employees=[ANA, LUIS])
        assert result.employees == [ANA, LUIS]
        assert result.degraded is True


# ============================================================================
# PAIR TESTS
# ============================================================================

class TestServiceEmployeePairs:
    """Tests for per-service candidate pairs."""

    def test_pairs_list_candidates_per_service(self, salon):
        """Each service lists the employees who can perform it."""
        capabilities = {salon.ana.id: {salon.haircut.id, salon.beard.id}, salon.luis.id: {salon.haircut.id}}
        pairs = build_service_employee_pairs(
            [salon.haircut, salon.beard],
            [salon.ana, salon.luis],
            capabilities,
            chosen={salon.beard.id: salon.luis.id},
        )
        assert [e.id for e in pairs[0].employees] == [salon.ana.id, salon.luis.id]
        assert pairs[0].employee is None
        assert [e.id for e in pairs[1].employees] == [salon.ana.id]
        assert pairs[1].is_compatible is False

    def test_disabled_reason_when_nobody_offers_service(self, salon):
        """A service nobody offers carries a disabled reason."""
        pairs = build_service_employee_pairs([salon.coloring], [salon.ana], {salon.ana.id: set()})
        assert pairs[0].disabled_reason == "No employee offers Coloring"
