"""Default authorization collaborators for Google feeds."""

from feedsync.auth.google import get_valid_access_token, is_active_org_admin

__all__ = ["get_valid_access_token", "is_active_org_admin"]
