"""Escalation routing for non-APPROVED decisions and quarantined evidence."""

from aumos_evidence_ledger.escalation.router import ROUTES, EscalationRouter, Route, WorkItem, route_for

__all__ = ["ROUTES", "EscalationRouter", "Route", "WorkItem", "route_for"]
