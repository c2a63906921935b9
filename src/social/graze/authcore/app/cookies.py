"""
Session cookie helpers for the HTTP layer that fronts the auth core.

This service only serves `/internal/*`. The public sign-in, sign-out and authenticated routes live in the
application that embeds `AuthOrchestrator`; its handlers call `set_session_cookie` with the `SessionGrant` of a
successful result, `clear_session_cookie` on sign-out, and `session_token` to read the token back for
`authenticate`.
"""
from aiohttp import web

from social.graze.authcore.core.session_manager import CookiePolicy, SessionGrant


def set_session_cookie(response: web.StreamResponse, grant: SessionGrant) -> None:
    """Attach the session token to a response using the grant's cookie attributes."""
    policy = grant.cookie
    response.set_cookie(
        policy.name,
        grant.token,
        max_age=policy.max_age,
        path=policy.path,
        domain=policy.domain,
        secure=policy.secure,
        httponly=policy.http_only,
        samesite=policy.same_site,
    )


def clear_session_cookie(response: web.StreamResponse, policy: CookiePolicy) -> None:
    response.del_cookie(policy.name, path=policy.path, domain=policy.domain)


def session_token(request: web.Request, policy: CookiePolicy) -> str:
    return request.cookies.get(policy.name, "")
