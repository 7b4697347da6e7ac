"""
JSON API for the marketplace storefront, sellers and admins.

Storefront:  GET  /api/v1/sponsored
             POST /api/v1/sponsored/{id}/impression|click|conversion
Seller:      /api/v1/seller/*   (identity in the X-Seller-Id header)
Admin:       /api/v1/admin/*    (ADMIN_API_KEY via X-API-Key, Bearer or ?api_key=)

Errors: {"status": "error", "message": "..."} with 400/401/403/404/409/503.
"""

import hmac
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from aiohttp import web

from config import CFG
from marketplace import (
    AccessDeniedError,
    InvalidTransitionError,
    MarketplaceServices,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
    build_services,
)
from marketplace.constants import DEFAULT_PRIORITY_LEVEL, REQUEST_DELETE, REQUEST_EDIT, REQUEST_NEW
from marketplace.validation import normalize_request_type, require_identity

logger = logging.getLogger(__name__)

SERVICES_KEY = web.AppKey("services", MarketplaceServices)
ADMIN_API_KEY = web.AppKey("admin_api_key", str)

ADMIN_PREFIX = "/api/v1/admin/"
SETTINGS_FIELDS = {"max_sponsored_slots", "enable_rotation", "rotation_interval"}

ERROR_STATUSES: tuple[tuple[type[Exception], int], ...] = (
    (NotFoundError, 404),
    (InvalidTransitionError, 409),
    (ValidationError, 400),
    (AccessDeniedError, 403),
    (StoreUnavailableError, 503),
)
HANDLED_ERRORS = tuple(exc for exc, _ in ERROR_STATUSES)


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"status": "error", "message": message}, status=status)


def _extract_api_key_from_request(request: web.Request) -> str:
    """Extract API key from X-API-Key header, Bearer auth, or query param."""
    header_key = str(request.headers.get("X-API-Key") or "").strip()
    if header_key:
        return header_key

    auth_header = str(request.headers.get("Authorization") or "").strip()
    if auth_header.lower().startswith("bearer "):
        bearer = auth_header[7:].strip()
        if bearer:
            return bearer

    query_key = str(request.query.get("api_key") or "").strip()
    if query_key:
        return query_key

    return ""


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Translate domain errors into JSON error responses."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except HANDLED_ERRORS as error:
        status = next(code for exc, code in ERROR_STATUSES if isinstance(error, exc))
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, error)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.path, status, error)
        return _error(str(error), status)


@web.middleware
async def admin_auth_middleware(request: web.Request, handler) -> web.StreamResponse:
    if not request.path.startswith(ADMIN_PREFIX):
        return await handler(request)

    configured_key = request.app[ADMIN_API_KEY]
    if not configured_key:
        return _error("Admin API key is not configured", 503)

    api_key = _extract_api_key_from_request(request)
    if not api_key or not hmac.compare_digest(api_key, configured_key):
        logger.warning("Invalid admin API key attempt: %s %s", request.method, request.path)
        return _error("Unauthorized", 401)
    return await handler(request)


def _services(request: web.Request) -> MarketplaceServices:
    return request.app[SERVICES_KEY]


def _seller_id(request: web.Request) -> str:
    return require_identity(request.headers.get("X-Seller-Id"), "X-Seller-Id header")


def _admin_id(request: web.Request) -> str | None:
    return str(request.headers.get("X-Admin-Id") or "").strip() or None


async def _read_json(request: web.Request, *, required: bool = True) -> dict[str, Any]:
    if not request.can_read_body:
        if required:
            raise ValidationError("JSON body is required")
        return {}
    try:
        data = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON") from None
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def _ok(status: int = 200, **payload: Any) -> web.Response:
    return web.json_response({"status": "ok", **payload}, status=status)


# ---- service ----


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint."""
    return web.json_response({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "marketplace-api",
    })


# ---- storefront ----


async def sponsored_handler(request: web.Request) -> web.Response:
    """Featured restaurants in display order."""
    restaurants = await _services(request).sponsorships.featured_restaurants()
    return _ok(restaurants=restaurants, total=len(restaurants))


async def sponsored_event_handler(request: web.Request) -> web.Response:
    sponsorships = _services(request).sponsorships
    sponsorship_id = request.match_info["sponsorship_id"]
    event = request.match_info["event"]
    if event == "impression":
        recorded = await sponsorships.record_impression(sponsorship_id)
    elif event == "click":
        recorded = await sponsorships.record_click(sponsorship_id)
    else:
        recorded = await sponsorships.record_conversion(sponsorship_id)
    return _ok(recorded=recorded)


# ---- seller ----


async def seller_submit_handler(request: web.Request) -> web.Response:
    """
    Create a submission.

    Body: {"request_type": "new|edit|delete", "product_type": "restaurant|menu_item",
           "payload": {...}, "original_product_id": "...", "reason": "..."}
    """
    seller_id = _seller_id(request)
    data = await _read_json(request)
    moderation = _services(request).moderation
    request_type = normalize_request_type(data.get("request_type") or REQUEST_NEW)
    product_type = data.get("product_type")
    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")

    if request_type == REQUEST_NEW:
        submission_id = await moderation.submit_new(product_type, payload, seller_id)
    elif request_type == REQUEST_EDIT:
        submission_id = await moderation.submit_edit(data.get("original_product_id"), product_type, payload, seller_id)
    elif request_type == REQUEST_DELETE:
        submission_id = await moderation.submit_deletion(
            data.get("original_product_id"),
            product_type,
            seller_id,
            reason=str(data.get("reason") or ""),
        )
    else:
        raise ValidationError(f"Unknown request_type: {request_type!r}")

    return _ok(status=201, submission=await moderation.get(submission_id))


async def seller_submissions_handler(request: web.Request) -> web.Response:
    seller_id = _seller_id(request)
    status = request.query.get("status") or None
    submissions = await _services(request).moderation.list_by_seller(seller_id, status=status)
    return _ok(submissions=submissions, total=len(submissions))


async def seller_update_submission_handler(request: web.Request) -> web.Response:
    seller_id = _seller_id(request)
    data = await _read_json(request)
    payload = data.get("payload")
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")
    submission = await _services(request).moderation.update_pending(
        request.match_info["submission_id"],
        seller_id,
        payload,
    )
    return _ok(submission=submission)


async def seller_cancel_submission_handler(request: web.Request) -> web.Response:
    seller_id = _seller_id(request)
    await _services(request).moderation.cancel(request.match_info["submission_id"], seller_id)
    return _ok()


async def seller_products_handler(request: web.Request) -> web.Response:
    products = await _services(request).moderation.list_seller_live_products(_seller_id(request))
    return _ok(products=products, total=len(products))


# ---- admin: moderation ----


async def admin_submissions_handler(request: web.Request) -> web.Response:
    submissions = await _services(request).moderation.list_all(
        status=request.query.get("status") or None,
        product_type=request.query.get("product_type") or None,
        request_type=request.query.get("request_type") or None,
        seller_id=request.query.get("seller_id") or None,
    )
    return _ok(submissions=submissions, total=len(submissions))


async def admin_submission_handler(request: web.Request) -> web.Response:
    submission = await _services(request).moderation.get(request.match_info["submission_id"])
    return _ok(submission=submission)


async def admin_approve_handler(request: web.Request) -> web.Response:
    data = await _read_json(request, required=False)
    submission = await _services(request).moderation.approve(
        request.match_info["submission_id"],
        str(data.get("feedback") or ""),
        admin_id=_admin_id(request),
    )
    return _ok(submission=submission)


async def admin_reject_handler(request: web.Request) -> web.Response:
    data = await _read_json(request, required=False)
    submission = await _services(request).moderation.reject(
        request.match_info["submission_id"],
        str(data.get("reason") or ""),
        admin_id=_admin_id(request),
    )
    return _ok(submission=submission)


# ---- admin: sponsorships ----


async def admin_sponsorships_handler(request: web.Request) -> web.Response:
    sponsorships = await _services(request).sponsorships.list_all()
    return _ok(sponsorships=sponsorships, total=len(sponsorships))


async def admin_create_sponsorship_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    sponsorship = await _services(request).sponsorships.create(
        data.get("restaurant_id"),
        priority_level=data.get("priority_level") or DEFAULT_PRIORITY_LEVEL,
        start_date=data.get("start_date"),
        end_date=data.get("end_date"),
        is_active=data.get("is_active", True),
    )
    return _ok(status=201, sponsorship=sponsorship)


async def admin_sponsorship_handler(request: web.Request) -> web.Response:
    sponsorship = await _services(request).sponsorships.get(request.match_info["sponsorship_id"])
    return _ok(sponsorship=sponsorship)


async def admin_update_sponsorship_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    sponsorship = await _services(request).sponsorships.update(request.match_info["sponsorship_id"], data)
    return _ok(sponsorship=sponsorship)


async def admin_delete_sponsorship_handler(request: web.Request) -> web.Response:
    await _services(request).sponsorships.delete(request.match_info["sponsorship_id"])
    return _ok()


async def admin_move_sponsorship_handler(request: web.Request) -> web.Response:
    """Body: {"direction": "up" | "down"}."""
    data = await _read_json(request)
    sponsorship = await _services(request).sponsorships.reprioritize(
        request.match_info["sponsorship_id"],
        str(data.get("direction") or ""),
    )
    return _ok(sponsorship=sponsorship)


async def admin_toggle_sponsorship_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    sponsorship = await _services(request).sponsorships.toggle_active(
        request.match_info["sponsorship_id"],
        data.get("is_active"),
    )
    return _ok(sponsorship=sponsorship)


async def admin_sponsorship_settings_handler(request: web.Request) -> web.Response:
    settings = await _services(request).sponsorships.get_settings()
    return _ok(settings=asdict(settings))


async def admin_update_sponsorship_settings_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    unknown = sorted(set(data) - SETTINGS_FIELDS)
    if unknown:
        raise ValidationError(f"Unsupported fields: {', '.join(unknown)}")
    settings = await _services(request).sponsorships.update_settings(**data)
    return _ok(settings=asdict(settings))


async def admin_sponsorship_stats_handler(request: web.Request) -> web.Response:
    stats = await _services(request).sponsorships.dashboard_stats()
    return _ok(stats=stats)


async def admin_available_restaurants_handler(request: web.Request) -> web.Response:
    restaurants = await _services(request).sponsorships.list_available_restaurants(
        editing_id=request.query.get("editing_id") or None,
    )
    return _ok(restaurants=restaurants, total=len(restaurants))


# ---- admin: catalog ----


async def admin_restaurants_handler(request: web.Request) -> web.Response:
    restaurants = await _services(request).catalog.list_restaurants()
    return _ok(restaurants=restaurants, total=len(restaurants))


async def admin_create_restaurant_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    seller_id = data.pop("seller_id", None)
    restaurant = await _services(request).catalog.create_restaurant(data, seller_id=seller_id)
    return _ok(status=201, restaurant=restaurant)


async def admin_restaurant_handler(request: web.Request) -> web.Response:
    restaurant = await _services(request).catalog.get_restaurant(request.match_info["restaurant_id"])
    return _ok(restaurant=restaurant)


async def admin_update_restaurant_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    restaurant = await _services(request).catalog.update_restaurant(request.match_info["restaurant_id"], data)
    return _ok(restaurant=restaurant)


async def admin_delete_restaurant_handler(request: web.Request) -> web.Response:
    await _services(request).catalog.delete_restaurant(request.match_info["restaurant_id"])
    return _ok()


async def admin_menu_items_handler(request: web.Request) -> web.Response:
    items = await _services(request).catalog.list_menu_items(request.query.get("restaurant_id") or None)
    return _ok(menu_items=items, total=len(items))


async def admin_create_menu_item_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    seller_id = data.pop("seller_id", None)
    item = await _services(request).catalog.create_menu_item(data, seller_id=seller_id)
    return _ok(status=201, menu_item=item)


async def admin_menu_item_handler(request: web.Request) -> web.Response:
    item = await _services(request).catalog.get_menu_item(request.match_info["item_id"])
    return _ok(menu_item=item)


async def admin_update_menu_item_handler(request: web.Request) -> web.Response:
    data = await _read_json(request)
    item = await _services(request).catalog.update_menu_item(request.match_info["item_id"], data)
    return _ok(menu_item=item)


async def admin_delete_menu_item_handler(request: web.Request) -> web.Response:
    await _services(request).catalog.delete_menu_item(request.match_info["item_id"])
    return _ok()


def create_api_app(
    services: MarketplaceServices | None = None,
    *,
    admin_api_key: str | None = None,
) -> web.Application:
    """Build the aiohttp application."""
    app = web.Application(middlewares=[error_middleware, admin_auth_middleware])
    app[SERVICES_KEY] = services or build_services()
    app[ADMIN_API_KEY] = CFG.admin_api_key if admin_api_key is None else admin_api_key

    app.router.add_get("/", health_handler)
    app.router.add_get("/api/v1/health", health_handler)

    # Storefront
    app.router.add_get("/api/v1/sponsored", sponsored_handler)
    app.router.add_post(
        "/api/v1/sponsored/{sponsorship_id}/{event:impression|click|conversion}",
        sponsored_event_handler,
    )

    # Seller
    app.router.add_post("/api/v1/seller/submissions", seller_submit_handler)
    app.router.add_get("/api/v1/seller/submissions", seller_submissions_handler)
    app.router.add_patch("/api/v1/seller/submissions/{submission_id}", seller_update_submission_handler)
    app.router.add_delete("/api/v1/seller/submissions/{submission_id}", seller_cancel_submission_handler)
    app.router.add_get("/api/v1/seller/products", seller_products_handler)

    # Admin: moderation queue
    app.router.add_get("/api/v1/admin/submissions", admin_submissions_handler)
    app.router.add_get("/api/v1/admin/submissions/{submission_id}", admin_submission_handler)
    app.router.add_post("/api/v1/admin/submissions/{submission_id}/approve", admin_approve_handler)
    app.router.add_post("/api/v1/admin/submissions/{submission_id}/reject", admin_reject_handler)

    # Admin: sponsorships (fixed paths before {sponsorship_id})
    app.router.add_get("/api/v1/admin/sponsorships/settings", admin_sponsorship_settings_handler)
    app.router.add_put("/api/v1/admin/sponsorships/settings", admin_update_sponsorship_settings_handler)
    app.router.add_get("/api/v1/admin/sponsorships/stats", admin_sponsorship_stats_handler)
    app.router.add_get("/api/v1/admin/sponsorships/available-restaurants", admin_available_restaurants_handler)
    app.router.add_get("/api/v1/admin/sponsorships", admin_sponsorships_handler)
    app.router.add_post("/api/v1/admin/sponsorships", admin_create_sponsorship_handler)
    app.router.add_get("/api/v1/admin/sponsorships/{sponsorship_id}", admin_sponsorship_handler)
    app.router.add_patch("/api/v1/admin/sponsorships/{sponsorship_id}", admin_update_sponsorship_handler)
    app.router.add_delete("/api/v1/admin/sponsorships/{sponsorship_id}", admin_delete_sponsorship_handler)
    app.router.add_post("/api/v1/admin/sponsorships/{sponsorship_id}/move", admin_move_sponsorship_handler)
    app.router.add_post("/api/v1/admin/sponsorships/{sponsorship_id}/toggle", admin_toggle_sponsorship_handler)

    # Admin: catalog
    app.router.add_get("/api/v1/admin/restaurants", admin_restaurants_handler)
    app.router.add_post("/api/v1/admin/restaurants", admin_create_restaurant_handler)
    app.router.add_get("/api/v1/admin/restaurants/{restaurant_id}", admin_restaurant_handler)
    app.router.add_patch("/api/v1/admin/restaurants/{restaurant_id}", admin_update_restaurant_handler)
    app.router.add_delete("/api/v1/admin/restaurants/{restaurant_id}", admin_delete_restaurant_handler)
    app.router.add_get("/api/v1/admin/menu-items", admin_menu_items_handler)
    app.router.add_post("/api/v1/admin/menu-items", admin_create_menu_item_handler)
    app.router.add_get("/api/v1/admin/menu-items/{item_id}", admin_menu_item_handler)
    app.router.add_patch("/api/v1/admin/menu-items/{item_id}", admin_update_menu_item_handler)
    app.router.add_delete("/api/v1/admin/menu-items/{item_id}", admin_delete_menu_item_handler)

    return app


async def start_api_server(app: web.Application, host: str | None = None, port: int | None = None) -> web.AppRunner:
    """Start the API server."""
    runner = web.AppRunner(app)
    await runner.setup()

    bind_host = host or CFG.api_host
    bind_port = CFG.api_port if port is None else port
    site = web.TCPSite(runner, bind_host, bind_port)
    await site.start()

    logger.info("API server started on %s:%s", bind_host, bind_port)

    return runner


async def stop_api_server(runner: web.AppRunner):
    """Stop the API server."""
    await runner.cleanup()
    logger.info("API server stopped")
