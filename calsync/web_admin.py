from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calsync.config_manager import SECRET_FIELDS, ConfigManager, provider_readiness
from calsync.connections import ConnectionService
from calsync.errors import (
    AuthError,
    CalendarSyncError,
    DecryptionError,
    DiscoveryError,
    NotFoundError,
    ProviderError,
)
from calsync.job_queue import JobOptions, JobQueue
from calsync.models import PrivacyMode, Provider, SyncDirection
from calsync.providers import build_adapters
from calsync.scheduler import QUEUE_NAME, SyncScheduler
from calsync.state_store import StateStore
from calsync.sync_engine import SyncEngine
from calsync.vault import CredentialVault


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CaldavConnectRequest(BaseModel):
    provider: Provider = Provider.CALDAV
    server_url: str = ""
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    account_label: str | None = None


class EwsConnectRequest(BaseModel):
    ews_url: str = Field(min_length=1)
    domain: str = ""
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    email: str = ""
    account_label: str | None = None


class OAuthConnectRequest(BaseModel):
    code: str = Field(min_length=1)


class CalendarUpdateRequest(BaseModel):
    sync_enabled: bool | None = None
    privacy_mode: PrivacyMode | None = None
    sync_direction: SyncDirection | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        self.state_store = StateStore(state_path)
        self.vault = CredentialVault.from_env(config.vault.encryption_key)
        self.adapters = build_adapters(self.state_store, self.vault, config)
        self.sync_engine = SyncEngine(self.state_store, self.adapters)
        self.job_queue = JobQueue(
            state_path,
            QUEUE_NAME,
            JobOptions(
                attempts=config.sync.job_attempts,
                backoff_delay_seconds=config.sync.backoff_delay_seconds,
                keep_completed=config.sync.keep_completed_jobs,
                keep_failed=config.sync.keep_failed_jobs,
            ),
        )
        self.scheduler = SyncScheduler(self.sync_engine, self.job_queue, self.config_manager)
        self.connections = ConnectionService(
            self.state_store,
            self.vault,
            self.adapters,
            self.scheduler.enqueue_sync_job,
            default_interval_minutes=config.sync.default_interval_minutes,
        )

    def reload_adapters(self) -> None:
        config = self.config_manager.load()
        # The vault keeps its startup key. The engine and the connection service share this mapping.
        self.adapters.update(build_adapters(self.state_store, self.vault, config))


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    for section_name, key in SECRET_FIELDS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict):
            continue
        section = dict(section)
        value = section.get(key)
        if value is not None and str(value).strip() in {"", "***"}:
            if str(current.get(section_name, {}).get(key, "")):
                section.pop(key, None)
            else:
                section[key] = ""
        if section:
            sanitized[section_name] = section
        else:
            sanitized.pop(section_name, None)
    return sanitized


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except (DiscoveryError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DecryptionError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except (ProviderError, CalendarSyncError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


def create_app() -> FastAPI:
    config_path = os.getenv("CALSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="calsync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        context = app.state.context
        return {
            "status": "ok",
            "jobs": context.job_queue.counts(),
            "providers": provider_readiness(context.config_manager.load()),
        }

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        vault_section = sanitized_payload.get("vault")
        if isinstance(vault_section, dict) and "encryption_key" in vault_section:
            if str(vault_section["encryption_key"]).strip() != current["vault"]["encryption_key"]:
                raise HTTPException(
                    status_code=409,
                    detail="vault.encryption_key is read at startup; edit the config file and restart to change it",
                )
        app.state.context.config_manager.update(sanitized_payload)
        app.state.context.reload_adapters()
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/members/{member_id}/connections")
    def list_connections(member_id: str) -> dict[str, Any]:
        return {"connections": app.state.context.connections.list_connections(member_id)}

    @app.post("/api/members/{member_id}/connections/caldav")
    def connect_caldav(member_id: str, request: CaldavConnectRequest) -> dict[str, Any]:
        with _translate_errors():
            connection = app.state.context.connections.connect_caldav(
                member_id,
                request.provider,
                request.server_url,
                request.username,
                request.password,
                request.account_label,
            )
        return {"connection": connection.to_dict()}

    @app.post("/api/members/{member_id}/connections/ews")
    def connect_ews(member_id: str, request: EwsConnectRequest) -> dict[str, Any]:
        with _translate_errors():
            connection = app.state.context.connections.connect_ews(
                member_id,
                request.ews_url,
                request.domain,
                request.username,
                request.password,
                request.email,
                request.account_label,
            )
        return {"connection": connection.to_dict()}

    @app.post("/api/members/{member_id}/connections/google")
    def connect_google(member_id: str, request: OAuthConnectRequest) -> dict[str, Any]:
        with _translate_errors():
            connection = app.state.context.connections.connect_google(member_id, request.code)
        return {"connection": connection.to_dict()}

    @app.post("/api/members/{member_id}/connections/outlook")
    def connect_outlook(member_id: str, request: OAuthConnectRequest) -> dict[str, Any]:
        with _translate_errors():
            connection = app.state.context.connections.connect_outlook(member_id, request.code)
        return {"connection": connection.to_dict()}

    @app.post("/api/members/{member_id}/connections/{connection_id}/reconnect")
    def reconnect(member_id: str, connection_id: str) -> dict[str, Any]:
        with _translate_errors():
            connection = app.state.context.connections.reconnect(member_id, connection_id)
        return {"connection": connection.to_dict()}

    @app.post("/api/members/{member_id}/connections/{connection_id}/refresh-calendars")
    def refresh_calendars(member_id: str, connection_id: str) -> dict[str, Any]:
        with _translate_errors():
            added = app.state.context.connections.refresh_calendar_list(member_id, connection_id)
        return {"added": added}

    @app.post("/api/members/{member_id}/connections/{connection_id}/sync")
    def trigger_sync(member_id: str, connection_id: str) -> dict[str, Any]:
        with _translate_errors():
            job_id = app.state.context.connections.trigger_sync(member_id, connection_id)
        return {"message": "sync queued", "job_id": job_id}

    @app.delete("/api/members/{member_id}/connections/{connection_id}")
    def delete_connection(member_id: str, connection_id: str) -> dict[str, Any]:
        with _translate_errors():
            app.state.context.connections.delete_connection(member_id, connection_id)
        return {"message": "connection deleted"}

    @app.patch("/api/members/{member_id}/calendars/{calendar_id}")
    def update_calendar(member_id: str, calendar_id: str, request: CalendarUpdateRequest) -> dict[str, Any]:
        with _translate_errors():
            calendar = app.state.context.connections.update_calendar(
                member_id,
                calendar_id,
                sync_enabled=request.sync_enabled,
                privacy_mode=request.privacy_mode,
                sync_direction=request.sync_direction,
            )
        return {"calendar": calendar.to_dict()}

    @app.get("/api/sync/runs")
    def sync_runs(limit: int = 20, connection_id: str | None = None) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(limit=limit, connection_id=connection_id)}

    return app


app = create_app()
