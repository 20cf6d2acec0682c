"""Group membership resolution."""
from .service import MembershipService, StaticMembershipService, is_guest_identity

__all__ = ["MembershipService", "StaticMembershipService", "is_guest_identity"]
