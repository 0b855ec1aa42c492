"""
Primary Typer application wiring for the broker adapters CLI.

Operators use it to inspect the adapter catalogue, resolve effective
configuration, run single poll or delivery cycles, re-arm disabled adapters and
check webhook signatures.
"""

from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from ..config import SettingsError, load_settings
from ..contract import AdapterError, ConfigError, TickStatus, DeliveryStatus, WebhookVerifier
from ..core import (
    AdapterDescriptor,
    AdapterDirection,
    AdapterRegistry,
    AdapterStatus,
    ExecutionContext,
    ExecutionOptions,
    RegistryLoadError,
    configure_logging,
)
from .adapters import build_runtime, parse_cursor, records_from_paths

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Operator CLI for integration broker adapters.\n\n"
        "Command groups:\n"
        "- adapters: catalogue, configuration, audit, polling, delivery and recovery commands.\n"
        "- webhooks: sign and verify HMAC webhook signatures."
    ),
)
adapters_app = typer.Typer(help="Inspect, verify and operate adapter instances from the catalogue.")
app.add_typer(adapters_app, name="adapters")
webhooks_app = typer.Typer(help="Compute and check HMAC signatures for webhook payloads.")
app.add_typer(webhooks_app, name="webhooks")

_CATALOG_PACKAGE = "broker_adapters.resources.adapters"
_FAILED_TICKS = {TickStatus.FAILED, TickStatus.DISABLED, TickStatus.SKIPPED_DISABLED}
_FAILED_DELIVERIES = {DeliveryStatus.FAILED, DeliveryStatus.DISABLED}


def _load_registry(catalog_file: Optional[Path]) -> AdapterRegistry:
    if catalog_file:
        return AdapterRegistry.from_yaml(catalog_file)
    with resources.as_file(resources.files(_CATALOG_PACKAGE) / "catalog.yaml") as resolved:
        return AdapterRegistry.from_yaml(resolved)


def _parse_status(status: Optional[str]) -> Optional[AdapterStatus]:
    if status is None:
        return None
    try:
        return AdapterStatus(status.lower())
    except ValueError:
        raise typer.BadParameter(f"Unknown status '{status}'. Expected one of: " f"{', '.join(item.value for item in AdapterStatus)}.") from None


def _parse_direction(direction: Optional[str]) -> Optional[AdapterDirection]:
    if direction is None:
        return None
    try:
        return AdapterDirection(direction.lower())
    except ValueError:
        raise typer.BadParameter(f"Unknown direction '{direction}'. Expected one of: " f"{', '.join(item.value for item in AdapterDirection)}.") from None


def _fail(message: str, exc: AdapterError) -> None:
    typer.echo(f"{message}: {exc}", err=True)
    raise typer.Exit(code=2 if isinstance(exc, ConfigError) else 1) from exc


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


@app.callback(invoke_without_command=False)
def main(
    ctx: typer.Context,
    catalog_file: Optional[Path] = typer.Option(
        None,
        "--catalog",
        "-c",
        help="Override adapter catalogue YAML file.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    settings_file: Optional[Path] = typer.Option(
        None,
        "--settings",
        help="Settings TOML file. Defaults to BROKER_ADAPTERS_SETTINGS or .broker/settings.toml.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    state_dir: Optional[Path] = typer.Option(
        None,
        "--state-dir",
        help="Directory for cursors, dedup indexes, budgets and dead letters.",
        file_okay=False,
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Resolve configuration without opening transports."),
    tag: Optional[List[str]] = typer.Option(None, "--tag", "-t", help="Observability tag attached to log lines. Can be repeated."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override BROKER_ADAPTERS_LOG_LEVEL."),
) -> None:
    """
    Configure global execution context.

    The callback stores the loaded catalogue and execution context in Typer's
    state so child commands can retrieve them via :class:`typer.Context`.
    """

    if log_level:
        configure_logging(log_level, force=True)
    try:
        registry = _load_registry(catalog_file)
    except RegistryLoadError as exc:
        typer.echo(f"Failed to load catalogue: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    try:
        settings = load_settings(path=settings_file)
    except SettingsError as exc:
        typer.echo(f"Failed to load settings: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    options = ExecutionOptions(dry_run=dry_run, observability_tags=tuple(tag or ()))
    context = ExecutionContext.build_default(state_dir=state_dir, options=options, settings=settings)
    # Without an explicit allowlist every non-blocked adapter is enabled.
    context.enabled_adapters.update(entry.adapter_id for entry in registry.iter_enabled())
    state = ctx.ensure_object(dict)
    state["registry"] = registry
    state["context"] = context


def _require_registry(ctx: typer.Context) -> AdapterRegistry:
    state = ctx.ensure_object(dict)
    registry = state.get("registry")
    if not isinstance(registry, AdapterRegistry):
        raise typer.Exit(code=2)
    return registry


def _require_context(ctx: typer.Context) -> ExecutionContext:
    state = ctx.ensure_object(dict)
    context = state.get("context")
    if not isinstance(context, ExecutionContext):
        raise typer.Exit(code=2)
    return context


def _require_descriptor(registry: AdapterRegistry, adapter_id: str) -> AdapterDescriptor:
    descriptor = registry.get(adapter_id)
    if not descriptor:
        typer.echo(f"Adapter '{adapter_id}' is not registered.", err=True)
        raise typer.Exit(code=1)
    return descriptor


@adapters_app.command("list")
def adapters_list(
    ctx: typer.Context,
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by lifecycle status."),
    direction: Optional[str] = typer.Option(None, "--direction", "-d", help="Filter by direction (inbound/outbound)."),
    show_blocked: bool = typer.Option(False, "--show-blocked", help="Include blocked adapters in the list."),
) -> None:
    """List catalogued adapters with basic metadata."""

    registry = _require_registry(ctx)
    status_filter = _parse_status(status)
    direction_filter = _parse_direction(direction)
    if status_filter:
        entries = registry.list(status=status_filter, direction=direction_filter)
    else:
        entries = [entry for entry in registry.iter_enabled(allow_blocked=show_blocked) if direction_filter is None or entry.direction == direction_filter]
    if not entries:
        typer.echo("No adapters match the requested filters.")
        raise typer.Exit(code=0)

    header = f"{'ID':<22} {'Type':<6} {'Direction':<9} {'Status':<11} Description"
    typer.echo(header)
    typer.echo("-" * len(header))
    for entry in entries:
        descr = entry.description.replace("\n", " ")
        typer.echo(f"{entry.adapter_id:<22} {entry.adapter_type:<6} {entry.direction.value:<9} {entry.status.value:<11} {descr}")


@adapters_app.command("describe")
def adapters_describe(
    ctx: typer.Context,
    adapter_id: str = typer.Argument(..., help="Identifier of the adapter."),
    output_json: bool = typer.Option(False, "--json", help="Emit descriptor in JSON format."),
) -> None:
    """Show catalogue metadata for a specific adapter."""

    registry = _require_registry(ctx)
    descriptor = _require_descriptor(registry, adapter_id)

    if output_json:
        typer.echo(descriptor.to_json())
        return

    typer.echo(f"ID: {descriptor.adapter_id}")
    typer.echo(f"Name: {descriptor.name}")
    typer.echo(f"Type: {descriptor.adapter_type}")
    typer.echo(f"Direction: {descriptor.direction.value}")
    typer.echo(f"Status: {descriptor.status.value}")
    if descriptor.blocked_reason:
        typer.echo(f"Blocked Reason: {descriptor.blocked_reason}")
    if descriptor.description:
        typer.echo(f"Description: {descriptor.description}")
    if descriptor.capabilities:
        typer.echo(f"Capabilities: {', '.join(descriptor.capabilities)}")
    if descriptor.tags:
        typer.echo(f"Tags: {', '.join(descriptor.tags)}")
    for key, value in descriptor.config.items():
        typer.echo(f"Config: {key}={value}")


@adapters_app.command("config")
def adapters_config(
    ctx: typer.Context,
    adapter_id: str = typer.Argument(..., help="Identifier of the adapter."),
    output_json: bool = typer.Option(False, "--json", help="Emit the effective configuration in JSON format."),
    show_sources: bool = typer.Option(False, "--sources", help="Show which scope supplied each option."),
) -> None:
    """Resolve and print the effective configuration of an adapter."""

    registry = _require_registry(ctx)
    context = _require_context(ctx)
    _require_descriptor(registry, adapter_id)
    runtime = build_runtime(registry, context)
    try:
        config = runtime.resolve_config(adapter_id)
    except AdapterError as exc:
        _fail("Configuration error", exc)

    payload = config.to_dict()
    if output_json:
        _echo_json({"config": payload, "sources": dict(config.sources)} if show_sources else payload)
        return
    for key, value in payload.items():
        if key == "transportOptions":
            continue
        suffix = f"  [{config.sources.get(key, 'default')}]" if show_sources else ""
        typer.echo(f"{key} = {value}{suffix}")
    for key, value in payload["transportOptions"].items():
        typer.echo(f"transport.{key} = {value}")


@adapters_app.command("audit")
def adapters_audit(
    ctx: typer.Context,
    show_blocked: bool = typer.Option(False, "--show-blocked", help="Include blocked adapters in the audit results."),
    output_json: bool = typer.Option(False, "--json", help="Emit the audit report in JSON format."),
    fail_on_error: bool = typer.Option(True, "--fail-on-error/--no-fail-on-error", help="Control whether failures set a non-zero exit code."),
) -> None:
    """
    Resolve configuration and verify connectivity for every catalogued adapter.
    """

    registry = _require_registry(ctx)
    context = _require_context(ctx)
    runtime = build_runtime(registry, context)

    descriptors = list(registry.iter_enabled(allow_blocked=show_blocked))
    if not descriptors:
        typer.echo("No adapters available for audit.")
        raise typer.Exit(code=0)

    records: List[Dict[str, Any]] = []
    failures = 0
    for descriptor in descriptors:
        enabled = context.is_enabled(descriptor.adapter_id)
        record: Dict[str, Any] = {
            "id": descriptor.adapter_id,
            "type": descriptor.adapter_type,
            "direction": descriptor.direction.value,
            "registry_status": descriptor.status.value,
            "enabled": enabled,
            "success": False,
            "message": "",
            "details": None,
        }

        if descriptor.status == AdapterStatus.BLOCKED:
            record["message"] = f"Blocked: {descriptor.blocked_reason or 'No blocked reason provided.'}"
            record["details"] = {"reason": "blocked"}
        elif not enabled:
            record["message"] = "Disabled in the current execution context."
            record["details"] = {"reason": "disabled"}
        else:
            try:
                verification = runtime.verify(descriptor.adapter_id)
            except AdapterError as exc:
                record["message"] = f"Adapter error: {exc}"
                record["details"] = {"reason": "adapter-error", "error_class": exc.error_class.value}
            else:
                record["success"] = verification.success
                record["message"] = verification.message
                if verification.details is not None:
                    record["details"] = dict(verification.details)

        if not record["success"]:
            failures += 1
        records.append(record)

    if output_json:
        _echo_json({"results": records})
    else:
        header = f"{'ID':<22} {'Registry':<10} {'Enabled':<7} {'Result':<7} Message"
        typer.echo(header)
        typer.echo("-" * len(header))
        for record in records:
            message = str(record["message"]).replace("\n", " ").strip()
            enabled_str = "yes" if record["enabled"] else "no"
            result_str = "pass" if record["success"] else "fail"
            typer.echo(f"{record['id']:<22} {record['registry_status']:<10} {enabled_str:<7} {result_str:<7} {message}")
        passed = len(records) - failures
        typer.echo(f"Audit complete: {len(records)} adapter(s), {passed} passed, {failures} failed.")

    if failures and fail_on_error:
        raise typer.Exit(code=1)


@adapters_app.command("verify")
def adapters_verify(
    ctx: typer.Context,
    adapter_id: str = typer.Argument(..., help="Identifier of the adapter."),
) -> None:
    """Open a connection for one adapter and run its liveness check."""

    registry = _require_registry(ctx)
    context = _require_context(ctx)
    descriptor = _require_descriptor(registry, adapter_id)
    if descriptor.status == AdapterStatus.BLOCKED:
        typer.echo(f"Adapter '{adapter_id}' is blocked: {descriptor.blocked_reason}")
        raise typer.Exit(code=1)

    runtime = build_runtime(registry, context)
    try:
        result = runtime.verify(adapter_id)
    except AdapterError as exc:
        _fail("Verification failed", exc)

    typer.echo(result.message)
    if result.details:
        typer.echo(f"Details: {json.dumps(dict(result.details), ensure_ascii=False, default=str)}")
    if not result.success:
        raise typer.Exit(code=1)


@adapters_app.command("poll")
def adapters_poll(
    ctx: typer.Context,
    adapter_id: str = typer.Argument(..., help="Identifier of an inbound adapter."),
    output_json: bool = typer.Option(False, "--json", help="Emit the tick outcome in JSON format."),
) -> None:
    """Run a single polling cycle and report what was handed off."""

    registry = _require_registry(ctx)
    context = _require_context(ctx)
    descriptor = _require_descriptor(registry, adapter_id)
    if descriptor.direction != AdapterDirection.INBOUND:
        typer.echo(f"Adapter '{adapter_id}' is not an inbound adapter.", err=True)
        raise typer.Exit(code=1)
    if context.options.dry_run:
        typer.echo(f"Dry-run: would poll '{adapter_id}'.")
        return

    runtime = build_runtime(registry, context)
    try:
        outcome = runtime.tick(adapter_id)
    except AdapterError as exc:
        _fail("Poll failed", exc)
    finally:
        runtime.deactivate(adapter_id)

    if output_json:
        _echo_json(outcome.to_dict())
    else:
        typer.echo(
            f"Poll {outcome.status.value}: {outcome.batches} batch(es), {outcome.handed_off} handed off, "
            f"{outcome.duplicates} duplicate(s), {outcome.skipped} skipped."
        )
        if outcome.cursor:
            typer.echo(f"Cursor: {outcome.cursor}")
        if outcome.error:
            typer.echo(f"Error: {outcome.error}", err=True)
    if outcome.status in _FAILED_TICKS:
        raise typer.Exit(code=1)


@adapters_app.command("deliver")
def adapters_deliver(
    ctx: typer.Context,
    adapter_id: str = typer.Argument(..., help="Identifier of an outbound adapter."),
    files: List[Path] = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Files to deliver as records."),
    output_json: bool = typer.Option(False, "--json", help="Emit the delivery outcome in JSON format."),
) -> None:
    """Submit files as records to an outbound adapter and flush them."""

    registry = _require_registry(ctx)
    context = _require_context(ctx)
    descriptor = _require_descriptor(registry, adapter_id)
    if descriptor.direction != AdapterDirection.OUTBOUND:
        typer.echo(f"Adapter '{adapter_id}' is not an outbound adapter.", err=True)
        raise typer.Exit(code=1)
    records = records_from_paths(files)
    if context.options.dry_run:
        typer.echo(f"Dry-run: would deliver {len(records)} record(s) to '{adapter_id}'.")
        return

    runtime = build_runtime(registry, context)
    outcomes = []
    try:
        for record in records:
            outcome = runtime.submit(adapter_id, record)
            if outcome.status != DeliveryStatus.QUEUED:
                outcomes.append(outcome)
        outcomes.append(runtime.flush(adapter_id))
    except AdapterError as exc:
        _fail("Delivery failed", exc)
    finally:
        runtime.deactivate(adapter_id)

    outcomes = [outcome for outcome in outcomes if outcome.status != DeliveryStatus.EMPTY] or outcomes[-1:]
    if output_json:
        _echo_json({"results": [outcome.to_dict() for outcome in outcomes]})
    else:
        for outcome in outcomes:
            typer.echo(
                f"Delivery {outcome.status.value}: {outcome.committed} committed, {outcome.duplicates} duplicate(s), "
                f"{outcome.skipped} skipped, {outcome.pending} pending."
            )
            for reference in outcome.references:
                typer.echo(f"  -> {reference}")
            if outcome.error:
                typer.echo(f"Error: {outcome.error}", err=True)
    if any(outcome.status in _FAILED_DELIVERIES for outcome in outcomes):
        raise typer.Exit(code=1)


@adapters_app.command("status")
def adapters_status(
    ctx: typer.Context,
    adapter_id: Optional[str] = typer.Argument(None, help="Limit the report to one adapter."),
    output_json: bool = typer.Option(False, "--json", help="Emit status in JSON format."),
) -> None:
    """Report cursor, retry and error budget state of adapters."""

    registry = _require_registry(ctx)
    context = _require_context(ctx)
    runtime = build_runtime(registry, context)
    targets = [adapter_id] if adapter_id else [entry.adapter_id for entry in registry.iter_enabled() if context.is_enabled(entry.adapter_id)]

    reports: List[Dict[str, Any]] = []
    for target in targets:
        _require_descriptor(registry, target)
        try:
            runtime.activate(target)
        except AdapterError as exc:
            reports.append({"id": target, "state": "error", "error": str(exc)})
    reports.extend(runtime.status())
    for target in targets:
        runtime.deactivate(target)

    if output_json:
        _echo_json({"adapters": reports})
        return
    header = f"{'ID':<22} {'State':<12} {'Failures':<9} Last error"
    typer.echo(header)
    typer.echo("-" * len(header))
    for report in reports:
        budget = report.get("budget") or {}
        failures = f"{budget.get('failures', '-')}/{budget.get('threshold', '-')}"
        last_error = budget.get("last_error_class") or report.get("error") or ""
        typer.echo(f"{report['id']:<22} {report.get('state', '?'):<12} {failures:<9} {last_error}")


@adapters_app.command("rearm")
def adapters_rearm(
    ctx: typer.Context,
    adapter_id: str = typer.Argument(..., help="Identifier of the adapter to re-enable."),
) -> None:
    """Clear the error budget of an adapter disabled by repeated failures."""

    registry = _require_registry(ctx)
    context = _require_context(ctx)
    _require_descriptor(registry, adapter_id)
    runtime = build_runtime(registry, context)
    try:
        runtime.rearm(adapter_id)
    except AdapterError as exc:
        _fail("Re-arm failed", exc)
    finally:
        runtime.deactivate(adapter_id)
    typer.echo(f"Adapter '{adapter_id}' re-armed.")


@adapters_app.command("reset-cursor")
def adapters_reset_cursor(
    ctx: typer.Context,
    adapter_id: str = typer.Argument(..., help="Identifier of an inbound adapter."),
    to: Optional[str] = typer.Option(None, "--to", help="New cursor value; omit to restart from the beginning."),
) -> None:
    """Move the cursor of an inbound adapter, including backwards."""

    registry = _require_registry(ctx)
    context = _require_context(ctx)
    _require_descriptor(registry, adapter_id)
    runtime = build_runtime(registry, context)
    try:
        config = runtime.resolve_config(adapter_id)
        cursor = parse_cursor(config.cursor_kind, to)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid cursor value '{to}': {exc}") from exc
    except AdapterError as exc:
        _fail("Configuration error", exc)
    try:
        runtime.reset_cursor(adapter_id, cursor)
    except AdapterError as exc:
        _fail("Cursor reset failed", exc)
    typer.echo(f"Cursor of '{adapter_id}' reset to {cursor or 'the beginning'}.")


@adapters_app.command("run")
def adapters_run(
    ctx: typer.Context,
    adapter_ids: Optional[List[str]] = typer.Argument(None, help="Adapters to run; defaults to every enabled adapter."),
) -> None:
    """Run the scheduler in the foreground until interrupted."""

    registry = _require_registry(ctx)
    context = _require_context(ctx)
    for adapter_id in adapter_ids or []:
        _require_descriptor(registry, adapter_id)
    runtime = build_runtime(registry, context)
    if adapter_ids:
        context.enabled_adapters.intersection_update(adapter_ids)
    runtime.run_forever()


def _read_body(body_file: Optional[Path], body: Optional[str]) -> bytes:
    if body_file is not None:
        return body_file.read_bytes()
    if body is not None:
        return body.encode("utf-8")
    raise typer.BadParameter("Provide --body-file or --body.")


@webhooks_app.command("sign")
def webhooks_sign(
    secret: str = typer.Option(..., "--secret", help="Shared secret."),
    body_file: Optional[Path] = typer.Option(None, "--body-file", exists=True, dir_okay=False, readable=True, help="Raw request body."),
    body: Optional[str] = typer.Option(None, "--body", help="Raw request body as text."),
    algorithm: str = typer.Option("sha256", "--algorithm", help="HMAC digest algorithm."),
) -> None:
    """Print the signature header value for a payload."""

    verifier = WebhookVerifier(algorithm)
    try:
        typer.echo(verifier.sign(_read_body(body_file, body), secret))
    except ValueError as exc:
        raise typer.BadParameter(f"Unsupported algorithm '{algorithm}'.") from exc


@webhooks_app.command("verify")
def webhooks_verify(
    signature: str = typer.Option(..., "--signature", help="Signature header value, e.g. 'sha256=<hex>'."),
    secret: str = typer.Option(..., "--secret", help="Shared secret."),
    body_file: Optional[Path] = typer.Option(None, "--body-file", exists=True, dir_okay=False, readable=True, help="Raw request body."),
    body: Optional[str] = typer.Option(None, "--body", help="Raw request body as text."),
    algorithm: str = typer.Option("sha256", "--algorithm", help="HMAC digest algorithm."),
) -> None:
    """Check a webhook signature; exits with code 1 when it does not match."""

    if WebhookVerifier(algorithm).verify(signature, _read_body(body_file, body), secret):
        typer.echo("Signature valid.")
        return
    typer.echo("Signature invalid.", err=True)
    raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover
    app()
