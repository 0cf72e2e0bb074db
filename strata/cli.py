"""Command line entrypoint for Strata."""

import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Dict, List

import click

from .config import ProviderConfig, Settings
from .document import load_document
from .engine import PlanResult, Reconciler
from .errors import StrataError
from .events import NdjsonEventSink, read_events
from .models import OperationType, Plan
from .providers import build_registry
from .state import FileStateStore, MemoryStateStore

OPERATION_SYMBOLS = {
    OperationType.CREATE: "+",
    OperationType.UPDATE: "~",
    OperationType.DELETE: "-",
    OperationType.NOOP: "=",
}


@click.group()
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.option('--provider', type=click.Choice(['aws', 'memory']), default='aws', show_default=True,
              help='Provider adapters to use (memory keeps everything in-process)')
@click.option('--region', default=None, help='Override the provider region')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def main(ctx, output_json, provider, region, verbose):
    """Strata - declarative infrastructure and workload reconciler."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['json'] = output_json
    ctx.obj['provider'] = provider
    ctx.obj['region'] = region


def _settings(ctx) -> Settings:
    try:
        return Settings.from_env()
    except ValueError as e:
        _fail(ctx, f"Invalid configuration: {e}")


def _reconciler(ctx) -> Reconciler:
    if 'reconciler' in ctx.obj:
        return ctx.obj['reconciler']

    settings = _settings(ctx)
    config = ProviderConfig.from_env()
    if ctx.obj.get('region'):
        config = ProviderConfig(region=ctx.obj['region'], profile=config.profile,
                                endpoint_url=config.endpoint_url, kube_context=config.kube_context)

    provider = ctx.obj['provider']
    store = MemoryStateStore() if provider == 'memory' else FileStateStore(settings.home)
    reconciler = Reconciler(
        registry=build_registry(provider),
        store=store,
        sink=NdjsonEventSink(settings.home / "events.ndjson"),
        config=config,
        settings=settings,
    )
    ctx.obj['reconciler'] = reconciler
    return reconciler


def _json_output(data: Any) -> None:
    """Output data as JSON."""
    click.echo(json.dumps(data, indent=None, default=str))


def _human_output(message: str) -> None:
    """Output human-readable message."""
    if not click.get_current_context().obj.get('json', False):
        click.echo(message)


def _fail(ctx, message: str, code: int = 1) -> None:
    if ctx.obj.get('json'):
        _json_output({'error': message})
    else:
        click.echo(f"❌ {message}", err=True)
    sys.exit(code)


def _show_plan(plan: Plan) -> None:
    _human_output(f"Plan {plan.plan_id} ({plan.mode}):")
    if not plan.operations:
        _human_output("  (nothing to do)")
    for op in plan.operations:
        deps = f" after {', '.join(op.depends_on)}" if op.depends_on else ""
        _human_output(f"  {OPERATION_SYMBOLS[op.type]} {op.type.value:<6} {op.kind.value:<15} {op.resource_id}{deps}")


def _show_result(result: PlanResult) -> None:
    if result.ok:
        _human_output(f"✅ Plan {result.plan_id} completed: {len(result.succeeded)} changed, "
                      f"{len(result.noop)} unchanged")
        return
    if result.cancelled:
        _human_output(f"⚠️  Plan {result.plan_id} cancelled")
    for resource_id, error in result.failed.items():
        _human_output(f"❌ {resource_id}: {error}")
    if result.skipped:
        _human_output(f"Skipped: {', '.join(result.skipped)}")


@main.command()
@click.option('--file', '-f', 'path', required=True, type=click.Path(exists=True, path_type=Path),
              help='Desired-state JSON document')
@click.pass_context
def plan(ctx, path):
    """Show the operations needed to converge to a desired state."""
    try:
        computed = _reconciler(ctx).plan(load_document(path))
    except (StrataError, ValueError) as e:
        _fail(ctx, f"Planning failed: {e}")

    if ctx.obj['json']:
        _json_output(computed.to_dict())
    else:
        _show_plan(computed)


@main.command()
@click.option('--file', '-f', 'path', required=True, type=click.Path(exists=True, path_type=Path),
              help='Desired-state JSON document')
@click.pass_context
def apply(ctx, path):
    """Converge real resources to a desired state."""
    reconciler = _reconciler(ctx)
    try:
        computed = reconciler.plan(load_document(path))
    except (StrataError, ValueError) as e:
        _fail(ctx, f"Planning failed: {e}")

    _show_plan(computed)
    result = reconciler.apply(computed)

    if ctx.obj['json']:
        _json_output({'plan': computed.to_dict(), 'result': result.to_dict()})
    else:
        _show_result(result)
    sys.exit(0 if result.ok else 1)


@main.command()
@click.option('--target', '-t', 'targets', multiple=True, help='Resource id to destroy (repeatable)')
@click.option('--cascade', is_flag=True, help='Also destroy dependents of the targets')
@click.pass_context
def destroy(ctx, targets, cascade):
    """Tear resources down in reverse dependency order."""
    reconciler = _reconciler(ctx)
    try:
        computed = reconciler.plan_destroy(
            targets=list(targets) or None,
            policy='cascade' if cascade else None,
        )
    except (StrataError, ValueError) as e:
        _fail(ctx, f"Planning teardown failed: {e}")

    _show_plan(computed)
    result = reconciler.destroy(computed)

    if ctx.obj['json']:
        _json_output({'plan': computed.to_dict(), 'result': result.to_dict()})
    else:
        _show_result(result)
    sys.exit(0 if result.ok else 1)


@main.command()
@click.argument('resource_id', required=False)
@click.pass_context
def state(ctx, resource_id):
    """Show recorded resource state."""
    reconciler = _reconciler(ctx)
    if resource_id:
        found = reconciler.get_state(resource_id)
        if found is None:
            _fail(ctx, f"Resource {resource_id} not found", code=2)
        states = [found]
    else:
        states = reconciler.list_state()

    if ctx.obj['json']:
        _json_output([s.to_dict() for s in states])
        return

    if not states:
        _human_output("No resources recorded")
    for s in states:
        line = f"{s.id:<20} {s.kind.value:<15} {s.status.value:<9} {s.provider_handle or '-'}"
        if s.error:
            line += f"  ({s.error})"
        _human_output(line)


@main.command()
@click.pass_context
def drift(ctx):
    """Check applied resources for drift once."""
    reports = _reconciler(ctx).detect_drift()

    if ctx.obj['json']:
        _json_output([
            {'resource_id': r.resource_id, 'missing': r.missing, 'differences': r.differences}
            for r in reports
        ])
    elif not reports:
        _human_output("✅ No drift detected")
    else:
        for report in reports:
            if report.missing:
                _human_output(f"⚠️  {report.resource_id}: resource no longer exists")
                continue
            for name, change in report.differences.items():
                _human_output(f"⚠️  {report.resource_id}.{name}: {change['old']!r} -> {change['new']!r}")
    sys.exit(1 if reports else 0)


@main.command()
@click.option('--file', '-f', 'path', required=True, type=click.Path(exists=True, path_type=Path),
              help='Desired-state JSON document')
@click.pass_context
def tick(ctx, path):
    """Run one scaling pass over the workloads in a desired state."""
    try:
        specs = load_document(path)
    except (StrataError, ValueError) as e:
        _fail(ctx, f"Invalid desired state: {e}")

    decisions = _reconciler(ctx).tick(specs)
    if ctx.obj['json']:
        _json_output([_decision_dict(d) for d in decisions])
        return
    for d in decisions:
        extra = f" delta={d.delta:+d}" if d.delta else ""
        _human_output(f"{d.resource_id:<20} {d.action}{extra}{'  ' + d.error if d.error else ''}")


def _decision_dict(decision) -> Dict[str, Any]:
    status = decision.status
    return {
        'resource_id': decision.resource_id,
        'action': decision.action,
        'delta': decision.delta,
        'desired_replicas': status.desired_replicas if status else None,
        'observed_replicas': status.observed_replicas if status else None,
        'error': decision.error,
    }


@main.command()
@click.option('--file', '-f', 'path', required=True, type=click.Path(exists=True, path_type=Path),
              help='Desired-state JSON document')
@click.pass_context
def watch(ctx, path):
    """Run the drift detector and scaling controller until interrupted."""
    reconciler = _reconciler(ctx)
    settings = reconciler.settings

    def current_specs():
        # re-read every tick so edits to the document are picked up
        return load_document(path)

    loops = [
        reconciler.drift_detector.loop(settings.drift_interval).start(),
        reconciler.scaling.loop(settings.scale_interval, current_specs).start(),
    ]
    _human_output("👀 Watching for drift and replica changes (press Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        _human_output("\nStopping...")
    finally:
        for loop in loops:
            loop.stop(timeout=5)


@main.command()
@click.option('--resource', 'resource_id', help='Only show events for one resource')
@click.option('--limit', default=50, show_default=True, type=click.IntRange(min=0),
              help='Number of most recent events to show')
@click.pass_context
def events(ctx, resource_id, limit):
    """Show recorded events."""
    settings = _settings(ctx)
    found: List[Dict[str, Any]] = read_events(settings.home / "events.ndjson")
    if resource_id:
        found = [e for e in found if e.get('resource_id') == resource_id]
    found = found[-limit:] if limit else []

    if ctx.obj['json']:
        _json_output(found)
        return
    for event in found:
        parts = [event.get('ts', ''), event.get('type', '')]
        for key in ('resource_id', 'operation', 'outcome'):
            if event.get(key):
                parts.append(f"{key}={event[key]}")
        _human_output("  ".join(parts))


if __name__ == '__main__':
    main()
