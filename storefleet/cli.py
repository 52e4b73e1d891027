from __future__ import annotations

from dataclasses import asdict
import logging
import threading

import typer
import yaml
from fastapi.encoders import jsonable_encoder

from storefleet.config import load_settings
from storefleet.db import init_db, engine, session_scope
from storefleet.logging_config import configure_logging
from storefleet.models import StoreCreate
from storefleet.services import audit as audit_service, stores as store_service
from storefleet.services.errors import StoreFleetException
from storefleet.services.reconcile import StoreReconciler, build_reconciler
from storefleet.services.store_constants import StoreType

configure_logging()
logger = logging.getLogger(__name__)
app = typer.Typer(help="Storefleet CLI", pretty_exceptions_show_locals=False)


def _exit_for_domain_error(exc: StoreFleetException) -> None:
    logger.warning("CLI command failed with domain error: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _echo_yaml_entity(entity: object) -> None:
    encoded = jsonable_encoder(entity)
    typer.echo(yaml.safe_dump(encoded, sort_keys=False), nl=False)


def _reconciler() -> StoreReconciler:
    init_db(engine)
    return build_reconciler(load_settings(), session_factory=session_scope)


@app.command("create-store")
def create_store(
    name: str,
    store_type: StoreType = typer.Option(StoreType.WOOCOMMERCE, "--type"),
    version: str | None = typer.Option(None, "--version"),
) -> None:
    with session_scope() as session:
        try:
            store = store_service.create_store(
                session, payload=StoreCreate(name=name, type=store_type, version=version)
            )
        except StoreFleetException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(store)


@app.command("list-stores")
def list_stores(status: str | None = typer.Option(None, "--status")) -> None:
    with session_scope() as session:
        try:
            stores = store_service.list_stores(session, status=status)
        except StoreFleetException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(stores)


@app.command("get-store")
def get_store(store_id: str) -> None:
    with session_scope() as session:
        try:
            store = store_service.get_store(session, store_id=store_id)
        except StoreFleetException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(store)


@app.command("delete-store")
def delete_store(store_id: str) -> None:
    """Mark a store for deletion. The reconciler tears it down on its next tick."""
    with session_scope() as session:
        try:
            store = store_service.request_delete(session, store_id=store_id)
        except StoreFleetException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(store)


@app.command("upgrade-store")
def upgrade_store(store_id: str, version: str = typer.Option(..., "--version")) -> None:
    with session_scope() as session:
        try:
            store = store_service.request_upgrade(session, store_id=store_id, version=version)
        except StoreFleetException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(store)


@app.command("rollback-store")
def rollback_store(store_id: str, revision: int | None = typer.Option(None, "--revision")) -> None:
    with session_scope() as session:
        try:
            store = store_service.request_rollback(session, store_id=store_id, revision=revision)
        except StoreFleetException as e:
            _exit_for_domain_error(e)
        _echo_yaml_entity(store)


@app.command("list-events")
def list_events(store_id: str, limit: int = typer.Option(50, "--limit", min=1)) -> None:
    with session_scope() as session:
        _echo_yaml_entity(audit_service.list_events(session, store_id=store_id, limit=limit))


@app.command("reconcile")
def reconcile() -> None:
    """Run a single reconcile tick and print its summary."""
    reconciler = _reconciler()
    try:
        result = reconciler.tick()
    finally:
        reconciler.shutdown()
    if result is None:
        typer.echo("Error: a reconcile tick is already running", err=True)
        raise typer.Exit(code=1)
    _echo_yaml_entity(asdict(result))
    if result.error:
        raise typer.Exit(code=1)


@app.command("run")
def run(interval: int | None = typer.Option(None, "--interval", min=1)) -> None:
    """Reconcile on a fixed schedule until interrupted."""
    settings = load_settings()
    reconciler = _reconciler()
    stop_event = threading.Event()
    try:
        reconciler.run_forever(interval=interval or settings.reconcile_interval, stop_event=stop_event)
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
        stop_event.set()
    finally:
        reconciler.shutdown()


if __name__ == "__main__":
    app()
