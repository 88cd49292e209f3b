"""Core HR module — Employee and Department models."""

from hr_leave.core_hr.models import Department, Employee

__all__ = ["Employee", "Department"]
