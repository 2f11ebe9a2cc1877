"""
web.py
======
Flask REST API over the DataService.

Serves:
  - /api/routes          → ranked arbitrage routes (filters + refresh)
  - /api/tickers         → normalised tickers per exchange
  - /api/funding-rates   → funding rates per exchange
  - /api/health          → exchange + cache health (503 when degraded)
  - /api/statistics      → summary over the last good cycle
  - /api/top-opportunities?count=N
  - /api/refresh  (POST) → force a refresh cycle
  - /api/cache/info, /api/cache (DELETE)

Flask handles requests on its own threads. The DataService, its cache and
its background refresh live on one asyncio loop running in a daemon thread;
handlers submit coroutines to that loop and wait at most REQUEST_TIMEOUT.
A request that gives up does not cancel the refresh it was waiting on.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from config import PORT, REQUEST_TIMEOUT, SUPPORTED_EXCHANGES, get_logger
from data_service import DataService, RouteFilters, build_service
from errors import ArbitrageError, ValidationError

logger = get_logger("web")

MAX_TOP_OPPORTUNITIES = 100


# ── Event loop runtime ───────────────────────────────────────────────────────

class ServiceRuntime:
    """Owns the event loop thread that the DataService runs on."""

    def __init__(self, service: DataService, timeout: float = REQUEST_TIMEOUT) -> None:
        self.service = service
        self.timeout = timeout
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="service-loop", daemon=True)
        self._started = False

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self) -> None:
        if self._started:
            return
        self._thread.start()
        self._started = True
        self.run(self.service.start())

    def run(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(self.timeout if timeout is None else timeout)

    def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a plain function on the loop thread."""
        async def _invoke() -> Any:
            return fn(*args)
        return self.run(_invoke())

    async def _shutdown(self) -> None:
        await self.service.stop()
        # Requests that timed out can leave a refresh cycle running on the loop
        current = asyncio.current_task()
        pending = [t for t in asyncio.all_tasks() if t is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Cancelled %d pending task(s) on shutdown", len(pending))

    def stop(self) -> None:
        if not self._started:
            return
        try:
            self.run(self._shutdown(), timeout=max(self.timeout, 10.0))
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout=5)
            if not self._thread.is_alive():
                self.loop.close()
            self._started = False


# ── Query parameter validation ───────────────────────────────────────────────

def _float_arg(name: str, minimum: Optional[float] = None) -> Optional[float]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except ValueError:
        raise ValidationError(f"{name} must be a number", {"field": name, "value": raw})
    if value != value or (minimum is not None and value < minimum):
        raise ValidationError(f"{name} must be >= {minimum}", {"field": name, "value": raw})
    return value


def _int_arg(name: str, default: Optional[int], minimum: int, maximum: Optional[int] = None) -> Optional[int]:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", {"field": name, "value": raw})
    if value < minimum or (maximum is not None and value > maximum):
        bounds = f"between {minimum} and {maximum}" if maximum is not None else f">= {minimum}"
        raise ValidationError(f"{name} must be {bounds}", {"field": name, "value": raw})
    return value


def _bool_arg(name: str) -> bool:
    return request.args.get(name, "false").strip().lower() in ("1", "true", "yes")


def _exchange_arg(name: str) -> Optional[str]:
    raw = request.args.get(name)
    if not raw:
        return None
    exchange = raw.strip().lower()
    if exchange not in SUPPORTED_EXCHANGES:
        raise ValidationError(f"Unknown exchange: {raw}", {"field": name, "supported": SUPPORTED_EXCHANGES})
    return exchange


def _exchanges_arg(name: str) -> List[str]:
    raw = request.args.get(name, "")
    names = [part.strip().lower() for part in raw.split(",") if part.strip()]
    unknown = [n for n in names if n not in SUPPORTED_EXCHANGES]
    if unknown:
        raise ValidationError(
            f"Unknown exchange(s): {', '.join(unknown)}",
            {"field": name, "supported": SUPPORTED_EXCHANGES},
        )
    return names


def _route_filters() -> RouteFilters:
    search = request.args.get("search", "").strip()
    return RouteFilters(
        min_spread=_float_arg("minSpread", minimum=0),
        min_volume=_float_arg("minVolume", minimum=0),
        exchanges=_exchanges_arg("exchanges"),
        search=search or None,
        limit=_int_arg("limit", None, minimum=1),
    )


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── App factory ──────────────────────────────────────────────────────────────

def create_app(service: Optional[DataService] = None, runtime: Optional[ServiceRuntime] = None) -> Flask:
    """
    Build the Flask app and start the service loop.

    Parameters
    ----------
    service : DataService to expose; built from config when None
    runtime : pre-built ServiceRuntime (tests pass one with a short timeout)
    """
    if runtime is None:
        runtime = ServiceRuntime(service or build_service())
    runtime.start()
    svc = runtime.service

    app = Flask(__name__, static_folder=None)
    app.extensions["service_runtime"] = runtime

    def respond(payload: Any, status: Optional[int] = None):
        if status is None:
            status = 503 if isinstance(payload, dict) and payload.get("success") is False else 200
        return jsonify(payload), status

    @app.after_request
    def _headers(resp):
        resp.headers["Cache-Control"] = "no-cache, no-store, must-revalidate"
        resp.headers["Access-Control-Allow-Origin"] = "*"
        return resp

    # -- Error handlers -------------------------------------------------------

    @app.errorhandler(ArbitrageError)
    def _arbitrage_error(exc: ArbitrageError):
        if exc.status_code >= 500:
            logger.error("Request %s %s failed: %s", request.method, request.path, exc)
        else:
            logger.info("Rejected %s %s: %s", request.method, request.path, exc.message)
        body = {"success": False, **exc.to_dict(), "timestamp": _iso_now()}
        return jsonify(body), exc.status_code

    @app.errorhandler(concurrent.futures.TimeoutError)
    def _timeout(exc):
        logger.warning("Request %s %s timed out after %.0fs", request.method, request.path, runtime.timeout)
        return jsonify({
            "success": False,
            "error": "Timeout",
            "message": f"Request did not complete within {runtime.timeout:.0f}s",
            "timestamp": _iso_now(),
        }), 504

    @app.errorhandler(Exception)
    def _unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        logger.error("Unhandled error on %s %s: %s", request.method, request.path, exc, exc_info=True)
        return jsonify({
            "success": False,
            "error": "InternalError",
            "message": str(exc) or type(exc).__name__,
            "timestamp": _iso_now(),
        }), 500

    # -- Routes ---------------------------------------------------------------

    @app.route("/api/routes")
    def api_routes():
        filters = _route_filters()
        refresh = _bool_arg("refresh")
        return respond(runtime.run(svc.get_routes(filters, force_refresh=refresh)))

    @app.route("/api/tickers")
    def api_tickers():
        exchange = _exchange_arg("exchange")
        refresh = _bool_arg("refresh")
        return respond(runtime.run(svc.get_tickers(exchange, force_refresh=refresh)))

    @app.route("/api/funding-rates")
    def api_funding_rates():
        exchange = _exchange_arg("exchange")
        refresh = _bool_arg("refresh")
        return respond(runtime.run(svc.get_funding_rates(exchange, force_refresh=refresh)))

    @app.route("/api/health")
    def api_health():
        return respond(runtime.run(svc.get_health()))

    @app.route("/api/statistics")
    def api_statistics():
        stats = runtime.call(svc.get_statistics)
        return respond({"success": True, "data": stats, "timestamp": _iso_now()})

    @app.route("/api/top-opportunities")
    def api_top_opportunities():
        count = _int_arg("count", 10, minimum=1, maximum=MAX_TOP_OPPORTUNITIES)
        data = runtime.call(svc.get_top_opportunities, count)
        return respond({"success": True, "data": data, "count": len(data), "timestamp": _iso_now()})

    @app.route("/api/refresh", methods=["POST"])
    def api_refresh():
        return respond(runtime.run(svc.force_update()))

    @app.route("/api/cache/info")
    def api_cache_info():
        info = runtime.call(svc.get_cache_info)
        return respond({"success": True, "data": info, "timestamp": _iso_now()})

    @app.route("/api/cache", methods=["DELETE"])
    def api_cache_clear():
        runtime.call(svc.clear_cache)
        return respond({"success": True, "message": "Cache cleared", "timestamp": _iso_now()})

    return app


if __name__ == "__main__":
    import os

    debug = os.environ.get("FLASK_DEBUG", "false").lower() == "true"
    application = create_app()
    print(f"Starting Route Scanner API on port {PORT}")
    print(f"  Exchanges: {', '.join(application.extensions['service_runtime'].service.gateway.exchange_names)}")
    try:
        application.run(host="0.0.0.0", port=PORT, debug=debug, use_reloader=False)
    finally:
        application.extensions["service_runtime"].stop()
