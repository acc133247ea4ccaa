"""
User roles enumeration.

Defines the role types for the trip scheduling system.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        SUPER_ADMIN: Full system access
        ADMIN: Manages schedules and fleet records
        SCHEDULER: Creates and maintains trip schedules
        DRIVER: Executes scheduled trips
        REQUESTOR: Raises trip requests (default role)
    """
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    SCHEDULER = "SCHEDULER"
    DRIVER = "DRIVER"
    REQUESTOR = "REQUESTOR"


# Roles allowed to create, re-schedule and cancel schedules
SCHEDULE_MANAGER_ROLES = [UserRole.SCHEDULER, UserRole.ADMIN, UserRole.SUPER_ADMIN]
