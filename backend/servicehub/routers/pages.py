"""Page routes: each answers a JSON view-model after passing the route guard."""

from typing import Any, Awaitable, Callable, Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse

from servicehub.routing import GUARDED_ROUTES, PUBLIC_ROUTES, guard
from servicehub.sessions import browse_store, raise_for_settlement, snapshot
from servicehub.store.root import Store

router = APIRouter(tags=["pages"])

PageBuilder = Callable[[Store, Dict[str, str]], Awaitable[Dict[str, Any]]]


async def _home(store: Store, params: Dict[str, str]) -> Dict[str, Any]:
    raise_for_settlement(await store.services.list())
    return {"services": snapshot(store.services.state)["services"]}


async def _guest_form(store: Store, params: Dict[str, str]) -> Dict[str, Any]:
    return {}


async def _service_catalog(store: Store, params: Dict[str, str]) -> Dict[str, Any]:
    raise_for_settlement(await store.services.list())
    return {"services": snapshot(store.services.state)["services"]}


async def _service_detail(store: Store, params: Dict[str, str]) -> Dict[str, Any]:
    raise_for_settlement(await store.services.get_by_id(params["service_id"]))
    raise_for_settlement(await store.services.list_reviews(params["service_id"]))
    state = snapshot(store.services.state)
    return {"service": state["currentService"], "reviews": state["reviews"]}


async def _dashboard(store: Store, params: Dict[str, str]) -> Dict[str, Any]:
    user = store.state.auth.user
    if user.user_type == "provider":
        raise_for_settlement(await store.bookings.list_for_provider(user.id))
        raise_for_settlement(await store.services.list())
        listings = [item for item in store.services.state.services if item.provider_id == user.id]
    else:
        raise_for_settlement(await store.bookings.list_for_customer(user.id))
        listings = []
    return {
        "bookings": snapshot(store.bookings.state)["bookings"],
        "services": [item.model_dump(mode="json", by_alias=True) for item in listings],
    }


async def _profile(store: Store, params: Dict[str, str]) -> Dict[str, Any]:
    return {}


async def _new_service(store: Store, params: Dict[str, str]) -> Dict[str, Any]:
    return {"service": None}


async def _edit_service(store: Store, params: Dict[str, str]) -> Dict[str, Any]:
    raise_for_settlement(await store.services.get_by_id(params["service_id"]))
    if store.services.state.current_service.provider_id != store.state.auth.user.id:
        raise HTTPException(status_code=403, detail="Only the provider can edit this listing")
    return {"service": snapshot(store.services.state)["currentService"]}


async def _bookings(store: Store, params: Dict[str, str]) -> Dict[str, Any]:
    user = store.state.auth.user
    if user.user_type == "provider":
        raise_for_settlement(await store.bookings.list_for_provider(user.id))
    else:
        raise_for_settlement(await store.bookings.list_for_customer(user.id))
    return {"bookings": snapshot(store.bookings.state)["bookings"]}


async def _booking_detail(store: Store, params: Dict[str, str]) -> Dict[str, Any]:
    raise_for_settlement(await store.bookings.get_by_id(params["booking_id"]))
    booking = store.bookings.state.current_booking
    if store.state.auth.user.id not in (booking.customer_id, booking.provider_id):
        raise HTTPException(status_code=403, detail="Not a party to this booking")
    return {"booking": snapshot(store.bookings.state)["currentBooking"]}


async def _chat(store: Store, params: Dict[str, str]) -> Dict[str, Any]:
    raise_for_settlement(await store.chat.list_conversations(store.state.auth.user.id))
    return {"conversations": snapshot(store.chat.state)["conversations"]}


PAGE_BUILDERS: Dict[str, PageBuilder] = {
    "/": _home,
    "/login": _guest_form,
    "/register": _guest_form,
    "/services": _service_catalog,
    "/services/{service_id}": _service_detail,
    "/dashboard": _dashboard,
    "/profile": _profile,
    "/services/new": _new_service,
    "/services/{service_id}/edit": _edit_service,
    "/bookings": _bookings,
    "/bookings/{booking_id}": _booking_detail,
    "/chat": _chat,
}


async def render_page(request: Request, store: Store = Depends(browse_store)):
    await store.settle()
    decision = guard(store.state.auth, request.url.path)
    if decision.outcome == "redirect":
        return RedirectResponse(url=decision.location, status_code=303)
    if decision.outcome == "loading":
        return JSONResponse({"page": decision.route, "status": "loading"}, status_code=202)
    if decision.outcome == "not_found":
        return JSONResponse({"detail": "Not Found"}, status_code=404)

    user = store.state.auth.user
    view = await PAGE_BUILDERS[decision.route](store, dict(request.path_params))
    return {
        "page": decision.route,
        "user": user.model_dump(mode="json", by_alias=True) if user else None,
        **view,
    }


# Literal templates first so "/services/new" is not captured by "/services/{service_id}".
for _template in sorted((*PUBLIC_ROUTES, *GUARDED_ROUTES), key=lambda template: "{" in template):
    router.add_api_route(_template, render_page, methods=["GET"], include_in_schema=False)
