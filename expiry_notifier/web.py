"""Flask-powered JSON API for the password expiry notifier."""
from __future__ import annotations

import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .cadence import validate_cadence
from .config import AppConfig, load_config
from .delivery import (
    DeliveryCoordinator,
    DeliveryError,
    JobAlreadyRunningError,
    JobState,
    MODES,
    ProfileInactiveError,
    build_queue_items,
    plan_deliveries,
)
from .events import EventChannel, RecentEvents, configure_logging
from .expiry import MissingTimestampError, PrincipalStatus, evaluate, filter_statuses, summarize
from .graph_client import (
    GraphAuthError,
    GraphClient,
    GraphClientError,
    GraphConfigurationError,
    GraphRequestError,
    GraphTimeoutError,
    GroupNotFoundError,
    effective_credentials,
)
from .mailer import Mailer
from .models import (
    DirectoryPrincipal,
    GraphApiConfig,
    NotificationProfile,
    ProfileValidationError,
    SmtpConfig,
    ValidationResult,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from .scope import resolve_remote
from .storage import (
    EnvironmentNotFoundError,
    EnvironmentStore,
    HistoryStore,
    ProfileStore,
    QueueStore,
)


VERSION = "3.2.0"


def create_app(
    config_path: Optional[Path | str] = None,
    app_config: Optional[AppConfig] = None,
) -> Flask:
    """Create and configure the Flask application."""

    config = app_config or load_config(Path(config_path) if config_path else None)

    app = Flask(__name__, static_folder=None)
    app.json.sort_keys = False
    app.config["APP_CONFIG"] = config
    app.config.setdefault("GRAPH_CLIENT_FACTORY", GraphClient)
    app.config.setdefault("MAILER_FACTORY", Mailer)
    app.config.setdefault("DELIVERY_SLEEP", time.sleep)
    app.config.setdefault("CLOCK", utc_now)

    channel = EventChannel()
    recent = RecentEvents(config.logging.event_buffer_size)
    channel.subscribe(recent)
    configure_logging(config, channel)
    app.config["_EVENT_CHANNEL"] = channel
    app.config["_RECENT_EVENTS"] = recent

    storage = config.storage
    app.config["_ENVIRONMENT_STORE"] = EnvironmentStore(storage.environments_file)
    app.config["_PROFILE_STORE"] = ProfileStore(storage.profiles_file)
    app.config["_HISTORY_STORE"] = HistoryStore(storage.history_file, config.delivery.history_limit)
    app.config["_QUEUE_STORE"] = QueueStore(storage.queue_file)

    register_error_handlers(app)
    register_routes(app)
    app.logger.info("BOOT_MASTER: v%s ready (data root %s)", VERSION, storage.data_root)
    return app


def register_error_handlers(app: Flask) -> None:
    def _error(status: int, message: str, **extra: Any) -> Tuple[Any, int]:
        payload: Dict[str, Any] = {"success": False, "message": message}
        payload.update(extra)
        return jsonify(payload), status

    @app.errorhandler(GraphConfigurationError)
    def _graph_config_missing(exc: GraphConfigurationError) -> Any:
        app.logger.warning("CONFIG_MISSING: %s", exc)
        return _error(400, str(exc))

    @app.errorhandler(GraphAuthError)
    def _graph_auth(exc: GraphAuthError) -> Any:
        app.logger.error("OAUTH_FAILED: %s", exc.description)
        return _error(401, str(exc))

    @app.errorhandler(GraphTimeoutError)
    def _graph_timeout(exc: GraphTimeoutError) -> Any:
        app.logger.error("GRAPH_TIMEOUT: %s", exc)
        return _error(504, str(exc))

    @app.errorhandler(GroupNotFoundError)
    def _group_not_found(exc: GroupNotFoundError) -> Any:
        app.logger.warning("%s", exc)
        return _error(404, str(exc))

    @app.errorhandler(GraphRequestError)
    def _graph_request(exc: GraphRequestError) -> Any:
        app.logger.error("GRAPH_FAULT: %s", exc)
        return _error(502, str(exc))

    @app.errorhandler(GraphClientError)
    def _graph_generic(exc: GraphClientError) -> Any:
        app.logger.error("GRAPH_FAULT: %s", exc)
        return _error(500, str(exc))

    @app.errorhandler(DeliveryError)
    def _delivery(exc: DeliveryError) -> Any:
        app.logger.warning("%s", exc)
        return _error(409, str(exc))

    @app.errorhandler(ProfileValidationError)
    def _profile_invalid(exc: ProfileValidationError) -> Any:
        return _error(400, str(exc))

    @app.errorhandler(EnvironmentNotFoundError)
    def _environment_missing(exc: EnvironmentNotFoundError) -> Any:
        return _error(404, f"Environment '{exc.args[0]}' does not exist.")

    @app.errorhandler(HTTPException)
    def _http(exc: HTTPException) -> Any:
        return _error(exc.code or 500, exc.description or exc.name)


def register_routes(app: Flask) -> None:
    """Attach all API routes to the provided Flask app."""

    @app.get("/api/config")
    def api_config() -> Any:
        return jsonify(_environments(app).active().to_dict())

    @app.get("/api/environments")
    def api_environments() -> Any:
        return jsonify([environment.to_dict() for environment in _environments(app).list()])

    @app.post("/api/environments")
    def api_update_environments() -> Any:
        payload = _json_body()
        store = _environments(app)
        action = str(payload.get("action") or "").strip().lower()

        if action == "add":
            name = str(payload.get("name") or "").strip()
            if not name:
                raise BadRequest("Environment name is required.")
            created = store.add(name)
            app.logger.info("Environment '%s' created and activated.", created.name)
            return jsonify({"success": True, "id": created.id})
        if action == "switch":
            store.switch(_required(payload, "id"))
            _reset_graph_client(app)
            return jsonify({"success": True})
        if action == "update":
            graph = GraphApiConfig.from_dict(payload["graph"]) if payload.get("graph") else None
            smtp = SmtpConfig.from_dict(payload["smtp"]) if payload.get("smtp") else None
            store.update(_required(payload, "id"), graph=graph, smtp=smtp, name=payload.get("name"))
            _reset_graph_client(app)
            return jsonify({"success": True})
        if action == "delete":
            store.delete(_required(payload, "id"))
            _reset_graph_client(app)
            return jsonify({"success": True})
        raise BadRequest(f"Unknown environment action '{action}'.")

    @app.get("/api/users")
    def api_users() -> Any:
        environment = _environments(app).active()
        credentials = effective_credentials(environment.graph)
        if not credentials.has_credentials:
            return jsonify([])

        include_groups = _flag(request.args.get("withGroups"))
        client = _get_graph_client(app, credentials)
        statuses = _evaluate_all(app, client.list_users(include_groups=include_groups), credentials.default_expiry_days)
        try:
            statuses = filter_statuses(
                statuses,
                search=request.args.get("search"),
                quick_filter=request.args.get("filter", "all"),
                enabled_only=_flag(request.args.get("enabledOnly")),
                never_expires_only=_flag(request.args.get("neverExpiresOnly")),
            )
        except ValueError as exc:
            raise BadRequest(str(exc)) from exc
        app.logger.info("Retrieved %s users.", len(statuses))
        return jsonify([status.to_dict() for status in statuses])

    @app.get("/api/stats")
    def api_stats() -> Any:
        environment = _environments(app).active()
        credentials = effective_credentials(environment.graph)
        if not credentials.has_credentials:
            return jsonify(summarize([]))
        client = _get_graph_client(app, credentials)
        return jsonify(summarize(_evaluate_all(app, client.list_users(), credentials.default_expiry_days)))

    @app.post("/api/validate-permissions")
    def api_validate_permissions() -> Any:
        payload = _json_body()
        store = _environments(app)
        environment_id = payload.get("envId")
        if isinstance(payload.get("graphConfig"), dict):
            graph = GraphApiConfig.from_dict(payload["graphConfig"])
        elif payload.get("tenantId"):
            graph = GraphApiConfig.from_dict(payload)
        else:
            environment = store.get(environment_id) if environment_id else store.active()
            environment_id = environment.id
            graph = environment.graph

        checks = ValidationResult(timestamp=format_timestamp(_now(app)))
        try:
            client = _build_graph_client(app, effective_credentials(graph))
            client.acquire_token()
            checks.auth = True
            client.probe("/users")
            checks.user_scope = True
            client.probe("/groups")
            checks.group_scope = True
        except GraphClientError as exc:
            message = exc.description if isinstance(exc, (GraphAuthError, GraphRequestError)) else str(exc)
            app.logger.error("PERM_CHECK_FAILED: %s", message)
            status = 400 if isinstance(exc, GraphConfigurationError) else 401
            return jsonify({"success": False, "checks": checks.to_dict(), "message": message}), status

        store.record_validation(environment_id, checks)
        app.logger.info("VALIDATION_LOCKED: permissions confirmed.")
        return jsonify({"success": True, "checks": checks.to_dict(), "message": "Permissions OK"})

    @app.post("/api/verify-group")
    def api_verify_group() -> Any:
        name = _required(_json_body(), "name")
        client = _active_graph_client(app)
        group = client.get_group_by_name(name)
        members = client.list_transitive_members(group["id"])
        app.logger.info("Group '%s' resolved to %s members.", name, len(members))
        return jsonify({"success": True, "id": group["id"], "count": len(members)})

    @app.post("/api/verify-group-detailed")
    def api_verify_group_detailed() -> Any:
        payload = _json_body()
        name = _required(payload, "name")
        client = _active_graph_client(app)
        expiry_days = payload.get("expiryDays") or client.default_expiry_days
        try:
            expiry_days = int(expiry_days)
        except (TypeError, ValueError) as exc:
            raise BadRequest("expiryDays must be a whole number.") from exc
        group = client.get_group_by_name(name)
        statuses = _evaluate_all(app, client.list_transitive_users(group["id"]), expiry_days)
        return jsonify(
            {
                "success": True,
                "id": group["id"],
                "count": len(statuses),
                "members": [status.to_dict() for status in statuses],
            }
        )

    @app.post("/api/test-smtp")
    def api_test_smtp() -> Any:
        payload = _json_body()
        smtp = (
            SmtpConfig.from_dict(payload["smtp"])
            if isinstance(payload.get("smtp"), dict)
            else _environments(app).active().smtp
        )
        error = app.config["MAILER_FACTORY"](smtp).verify()
        if error:
            app.logger.error("SMTP_CHECK_FAILED: %s", error)
            return jsonify({"success": False, "message": error}), 502
        return jsonify({"success": True, "message": f"Connected to {smtp.host}:{smtp.port}."})

    @app.get("/api/profiles")
    def api_profiles() -> Any:
        return jsonify([profile.to_dict() for profile in _profiles(app).list()])

    @app.post("/api/profiles")
    def api_save_profile() -> Any:
        saved = _profiles(app).save(NotificationProfile.from_dict(_json_body()))
        app.logger.info("Profile '%s' saved.", saved.name)
        return jsonify(saved.to_dict())

    @app.delete("/api/profiles/<profile_id>")
    def api_delete_profile(profile_id: str) -> Any:
        if not _profiles(app).delete(profile_id):
            return jsonify({"success": False, "message": f"Profile '{profile_id}' not found."}), 404
        return jsonify({"success": True})

    @app.post("/api/cadence/validate")
    def api_validate_cadence() -> Any:
        days = _json_body().get("daysBefore")
        if not isinstance(days, list):
            raise BadRequest("daysBefore must be a list of day offsets.")
        return jsonify({"success": True, "daysBefore": validate_cadence(days)})

    @app.post("/api/run-job")
    def api_run_job() -> Any:
        payload = _json_body()
        profile = _resolve_profile(app, payload)
        mode = str(payload.get("mode") or "live").strip().lower()
        if mode not in MODES:
            raise BadRequest(f"Unknown job mode '{mode}'.")
        if profile.status == "dryrun":
            mode = "preview"
        if mode == "test" and not payload.get("testEmail"):
            raise BadRequest("'testEmail' is required for test mode.")
        if profile.status == "paused":
            raise ProfileInactiveError(profile)
        config: AppConfig = app.config["APP_CONFIG"]
        cadence_aware = payload.get("cadenceAware", config.delivery.cadence_aware)
        if isinstance(cadence_aware, str):
            cadence_aware = _flag(cadence_aware)

        coordinator = _get_coordinator(app)
        if mode != "preview" and coordinator.state is JobState.RUNNING:
            raise JobAlreadyRunningError()

        environment = _environments(app).active()
        credentials = effective_credentials(environment.graph)
        client = _get_graph_client(app, credentials)
        principals = resolve_remote(profile.assigned_groups, client)
        statuses = _evaluate_principals(app, principals, credentials.default_expiry_days)
        plans = plan_deliveries(
            profile,
            statuses,
            history=_history(app).entries(),
            cadence_aware=bool(cadence_aware) and mode != "test",
            match=config.delivery.cadence_match,
        )

        schedule_time = payload.get("scheduleTime")
        if schedule_time and mode == "live":
            scheduled_for = parse_timestamp(schedule_time)
            if scheduled_for is None:
                raise BadRequest("scheduleTime must be an ISO-8601 timestamp.")
            items = _queue(app).add(build_queue_items(profile, plans, scheduled_for))
            app.logger.info("QUEUED: %s deliveries for %s at %s.", len(items), profile.name, schedule_time)
            return jsonify({"success": True, "queued": len(items)})

        report = coordinator.run(
            profile,
            plans,
            app.config["MAILER_FACTORY"](environment.smtp),
            mode=mode,
            test_recipient=payload.get("testEmail") if mode == "test" else None,
            manager_lookup=client.get_manager_email,
        )
        return jsonify({"success": not report.failed, "report": report.to_dict()})

    @app.get("/api/history")
    def api_history() -> Any:
        return jsonify([entry.to_dict() for entry in _history(app).newest_first()])

    @app.get("/api/queue")
    def api_queue() -> Any:
        return jsonify([item.to_dict() for item in _queue(app).list()])

    @app.get("/api/queue/status")
    def api_queue_status() -> Any:
        queue = _queue(app)
        return jsonify(
            {
                "paused": queue.is_paused(),
                "count": len(queue.list()),
                "job": _get_coordinator(app).state.value,
            }
        )

    @app.post("/api/queue/toggle")
    def api_queue_toggle() -> Any:
        paused = _queue(app).toggle_pause()
        app.logger.warning("Delivery queue %s.", "paused" if paused else "resumed")
        return jsonify({"success": True, "paused": paused})

    @app.post("/api/queue/cancel")
    def api_queue_cancel() -> Any:
        removed = _queue(app).cancel(_required(_json_body(), "id"))
        return jsonify({"success": True, "removed": removed})

    @app.post("/api/queue/clear")
    def api_queue_clear() -> Any:
        cleared = _queue(app).clear()
        app.logger.warning("Delivery queue cleared (%s items).", cleared)
        return jsonify({"success": True, "cleared": cleared})

    @app.get("/api/logs")
    def api_logs() -> Any:
        try:
            limit = int(request.args.get("limit", "200"))
        except ValueError as exc:
            raise BadRequest("limit must be a whole number.") from exc
        events = app.config["_RECENT_EVENTS"].snapshot(max(1, limit))
        return jsonify([event.to_dict() for event in events])


def _environments(app: Flask) -> EnvironmentStore:
    return app.config["_ENVIRONMENT_STORE"]


def _profiles(app: Flask) -> ProfileStore:
    return app.config["_PROFILE_STORE"]


def _history(app: Flask) -> HistoryStore:
    return app.config["_HISTORY_STORE"]


def _queue(app: Flask) -> QueueStore:
    return app.config["_QUEUE_STORE"]


def _now(app: Flask) -> datetime:
    clock: Callable[[], datetime] = app.config["CLOCK"]
    return clock()


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise BadRequest("Request body must be a JSON object.")
    return payload


def _required(payload: Dict[str, Any], key: str) -> str:
    value = str(payload.get(key) or "").strip()
    if not value:
        raise BadRequest(f"'{key}' is required.")
    return value


def _flag(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


def _build_graph_client(app: Flask, credentials: GraphApiConfig) -> GraphClient:
    factory = app.config["GRAPH_CLIENT_FACTORY"]
    config: AppConfig = app.config["APP_CONFIG"]
    return factory(credentials, config.graph)


def _get_graph_client(app: Flask, credentials: GraphApiConfig) -> GraphClient:
    signature: Tuple[Any, ...] = (
        credentials.tenant_id,
        credentials.client_id,
        credentials.client_secret,
        credentials.default_expiry_days,
    )
    cached_signature = app.config.get("_GRAPH_CONFIG_SIGNATURE")
    cached_client = app.config.get("_GRAPH_CLIENT")
    if cached_client and cached_signature == signature:
        return cached_client

    client = _build_graph_client(app, credentials)
    app.config["_GRAPH_CLIENT"] = client
    app.config["_GRAPH_CONFIG_SIGNATURE"] = signature
    return client


def _reset_graph_client(app: Flask) -> None:
    app.config.pop("_GRAPH_CLIENT", None)
    app.config.pop("_GRAPH_CONFIG_SIGNATURE", None)


def _active_graph_client(app: Flask) -> GraphClient:
    environment = _environments(app).active()
    return _get_graph_client(app, effective_credentials(environment.graph))


def _get_coordinator(app: Flask) -> DeliveryCoordinator:
    coordinator = app.config.get("_DELIVERY_COORDINATOR")
    if coordinator is None:
        config: AppConfig = app.config["APP_CONFIG"]
        coordinator = DeliveryCoordinator(
            history=_history(app),
            is_paused=_queue(app).is_paused,
            interval=config.delivery.message_interval_seconds,
            sleep=app.config["DELIVERY_SLEEP"],
            clock=app.config["CLOCK"],
        )
        app.config["_DELIVERY_COORDINATOR"] = coordinator
    return coordinator


def _evaluate_all(app: Flask, raw_users: Iterable[Dict[str, Any]], expiry_days: int) -> List[PrincipalStatus]:
    return _evaluate_principals(app, (DirectoryPrincipal.from_graph(entry) for entry in raw_users), expiry_days)


def _evaluate_principals(
    app: Flask, principals: Iterable[DirectoryPrincipal], expiry_days: int
) -> List[PrincipalStatus]:
    config: AppConfig = app.config["APP_CONFIG"]
    now = _now(app)
    statuses: List[PrincipalStatus] = []
    for principal in principals:
        try:
            statuses.append(
                evaluate(principal, expiry_days, now, config.delivery.critical_threshold_days)
            )
        except MissingTimestampError as exc:
            app.logger.warning("Skipping principal: %s", exc)
    return statuses


def _resolve_profile(app: Flask, payload: Dict[str, Any]) -> NotificationProfile:
    profile_id = payload.get("profileId")
    if profile_id:
        profile = _profiles(app).get(str(profile_id))
        if profile is None:
            raise ProfileNotFound(str(profile_id))
        return profile
    if isinstance(payload.get("profile"), dict):
        return NotificationProfile.from_dict(payload["profile"]).validated()
    raise BadRequest("Provide 'profileId' or an inline 'profile'.")


class ProfileNotFound(HTTPException):
    code = 404

    def __init__(self, profile_id: str) -> None:
        super().__init__(f"Profile '{profile_id}' not found.")


def main() -> None:
    """Run the API server."""

    config = load_config()
    app = create_app(app_config=config)
    app.run(
        host=config.server.host,
        port=config.server.port,
        debug=config.server.debug,
        threaded=True,
    )


if __name__ == "__main__":
    main()
