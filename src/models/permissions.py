"""
Role-based permission models for the monitoring portal.

Decides who may review records. Reviewers (supervisors, M&E officers,
admins) approve or return submissions; everyone else only submits.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class PortalUserRole(str, Enum):
    """Standard portal roles."""
    STAFF = "Staff"
    VOLUNTEER = "Volunteer"
    ADMIN = "Admin"
    COACH = "Coach"
    DATA_CLERK = "DataClerk"
    SCHOOL_LEADER = "SchoolLeader"
    PARTNER = "Partner"
    GOVERNMENT = "Government"


class PortalUser(BaseModel):
    """An authenticated portal user, as handed to us by the session layer."""

    id: int
    full_name: str = ""
    role: PortalUserRole = PortalUserRole.STAFF

    is_supervisor: bool = False
    is_me: bool = False
    is_admin: bool = False
    is_superadmin: bool = False

    @property
    def can_review(self) -> bool:
        """Reviewers may approve or return records and edit any record."""
        return (
            self.is_supervisor
            or self.is_me
            or self.is_admin
            or self.is_superadmin
            or self.role == PortalUserRole.ADMIN
        )

    @staticmethod
    def parse_role(text: Optional[str]) -> PortalUserRole:
        """Parse a free-text role into PortalUserRole, defaulting to Staff."""
        if not text:
            return PortalUserRole.STAFF

        lowered = text.replace(" ", "").replace("_", "").lower()
        for role in PortalUserRole:
            if role.value.lower() == lowered:
                return role

        if "clerk" in lowered:
            return PortalUserRole.DATA_CLERK
        elif "leader" in lowered or "headteacher" in lowered:
            return PortalUserRole.SCHOOL_LEADER
        elif "government" in lowered or "deo" in lowered:
            return PortalUserRole.GOVERNMENT
        else:
            return PortalUserRole.STAFF
