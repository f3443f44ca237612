from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header


@dataclass
class RequestContext:
    """Tenant and acting user for the current request.

    Authentication happens upstream; by the time a request reaches this API
    the gateway has resolved both identifiers into headers.
    """

    organization_id: int
    user_id: int


def get_request_context(
    x_organization_id: int = Header(...),
    x_user_id: int = Header(...),
) -> RequestContext:
    return RequestContext(organization_id=x_organization_id, user_id=x_user_id)
