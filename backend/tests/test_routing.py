import os
import sys
from datetime import datetime, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from servicehub.models import Account, AuthState
from servicehub.routing import guard, is_guarded, match_route

SIGNED_IN = AuthState(
    user=Account(
        id="u1",
        email="ana@example.com",
        display_name="Ana",
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
)


def test_literal_routes_win_over_parameterised_ones():
    assert match_route("/services/new") == ("/services/new", True)
    assert match_route("/services/abc123") == ("/services/{service_id}", False)
    assert match_route("/services/abc123/edit") == ("/services/{service_id}/edit", True)
    assert match_route("/bookings/") == ("/bookings", True)
    assert match_route("/nowhere") is None


def test_guarded_routes_redirect_guests_to_login():
    for path in ("/dashboard", "/profile", "/services/new", "/bookings/b1", "/chat"):
        decision = guard(AuthState(), path)
        assert decision.outcome == "redirect"
        assert decision.location == "/login"
    assert is_guarded("/chat")
    assert not is_guarded("/services")


def test_guarded_route_waits_while_session_is_loading():
    decision = guard(AuthState(is_loading=True), "/dashboard")
    assert decision.outcome == "loading"
    assert decision.route == "/dashboard"


def test_public_routes_allow_everyone():
    for path in ("/", "/services", "/services/s1"):
        assert guard(AuthState(), path).outcome == "allow"
        assert guard(SIGNED_IN, path).outcome == "allow"


def test_signed_in_user_is_sent_from_login_to_dashboard():
    assert guard(SIGNED_IN, "/login").location == "/dashboard"
    assert guard(SIGNED_IN, "/register").outcome == "redirect"
    assert guard(SIGNED_IN, "/dashboard").outcome == "allow"


def test_unknown_path_is_not_found():
    assert guard(SIGNED_IN, "/admin").outcome == "not_found"
