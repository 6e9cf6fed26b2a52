import re
from typing import Literal, NamedTuple, Optional, Pattern, Tuple

from servicehub.models import AuthState

LOGIN_PATH = "/login"
DASHBOARD_PATH = "/dashboard"

PUBLIC_ROUTES: Tuple[str, ...] = (
    "/",
    "/login",
    "/register",
    "/services",
    "/services/{service_id}",
)

GUARDED_ROUTES: Tuple[str, ...] = (
    "/dashboard",
    "/profile",
    "/services/new",
    "/services/{service_id}/edit",
    "/bookings",
    "/bookings/{booking_id}",
    "/chat",
)

GUEST_ONLY_ROUTES = {"/login", "/register"}


class RouteDecision(NamedTuple):
    outcome: Literal["allow", "redirect", "loading", "not_found"]
    route: Optional[str] = None
    location: Optional[str] = None


def _compile(template: str) -> Pattern[str]:
    pattern = re.sub(r"\{[a-z_]+\}", r"[^/]+", template)
    return re.compile(f"^{pattern}$")


# Literal templates win over parameterised ones ("/services/new" before "/services/{service_id}").
_ROUTE_TABLE = sorted(
    [(template, _compile(template), False) for template in PUBLIC_ROUTES]
    + [(template, _compile(template), True) for template in GUARDED_ROUTES],
    key=lambda entry: "{" in entry[0],
)


def match_route(path: str) -> Optional[Tuple[str, bool]]:
    normalized = path.rstrip("/") or "/"
    for template, pattern, guarded in _ROUTE_TABLE:
        if pattern.match(normalized):
            return template, guarded
    return None


def is_guarded(path: str) -> bool:
    matched = match_route(path)
    return bool(matched and matched[1])


def guard(auth: AuthState, path: str) -> RouteDecision:
    matched = match_route(path)
    if matched is None:
        return RouteDecision("not_found")
    route, guarded = matched
    if guarded:
        if auth.is_loading:
            return RouteDecision("loading", route)
        if auth.user is None:
            return RouteDecision("redirect", route, LOGIN_PATH)
    elif route in GUEST_ONLY_ROUTES and auth.user is not None:
        return RouteDecision("redirect", route, DASHBOARD_PATH)
    return RouteDecision("allow", route)
