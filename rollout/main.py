"""
GKE rollout — CLI entrypoint.

Usage:
    rollout --help
    rollout deploy dev plan-infra
    rollout deploy dev apply --yes
    rollout status dev --infra
    rollout destroy dev app
    rollout config check
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from rollout import __version__
from rollout.core.models.resource import Target
from rollout.core.observability.logging_config import LogSettings, setup_logging
from rollout.core.use_cases.deploy import DEPLOY_ACTIONS

TARGETS = tuple(t.value for t in Target)

# state → (icon, color)
_STATE_STYLE = {
    "ready": ("✓", "green"),
    "deleted": ("✓", "green"),
    "absent": ("·", "white"),
    "creating": ("…", "yellow"),
    "deleting": ("…", "yellow"),
    "degraded": ("⚠️ ", "yellow"),
    "blocked": ("⊘", "yellow"),
    "failed": ("✗", "red"),
    "unknown": ("?", "white"),
}

_OUTCOME_STYLE = {
    "success": ("✅", "green"),
    "cancelled": ("⊘", "yellow"),
    "partial": ("⚠️ ", "yellow"),
    "validation-failed": ("❌", "red"),
    "apply-failed": ("❌", "red"),
    "interrupted": ("⏹", "yellow"),
}


@click.group()
@click.version_option(version=__version__, prog_name="rollout")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to rollout.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
) -> None:
    """GKE rollout — staged deployment of the n8n platform on GKE."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None

    # ── Logging setup (once, at process start) ──────────────────
    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = None

    settings = LogSettings.from_environ(level)
    setup_logging(
        level=settings.level,
        log_file=settings.log_file,
        log_file_level=settings.log_file_level,
        quiet_third_party=not debug,
    )


# ── Output helpers ──────────────────────────────────────────────────


def _confirm_policy(yes: bool, as_json: bool):
    from rollout.core.engine.confirm import AutoApprove, Deny, interactive

    if yes:
        return AutoApprove()
    # Prompts would corrupt JSON output.
    return Deny() if as_json else interactive


def _print_node(outcome) -> None:
    icon, color = _STATE_STYLE.get(outcome.state.value, ("?", "white"))
    click.secho(f"   {icon} {outcome.node_id:<12}", fg=color, nl=False)
    detail = f" {outcome.action}" if outcome.action else ""
    timing = f" ({outcome.duration_ms / 1000:.1f}s)" if outcome.duration_ms else ""
    message = f"  {outcome.message}" if outcome.message else ""
    click.echo(f"{outcome.state.value}{detail}{timing}{message}")


def _print_validations(run, verbose: bool) -> None:
    for validation in run.validations:
        failed = [c for c in validation.checks if not c.ok]
        if not failed and not verbose:
            continue
        label = f"{validation.stage} {validation.phase}".strip()
        click.secho(f"\n   🔎 Checks ({label})", bold=True)
        for check in validation.checks:
            if not check.ok:
                click.secho(f"     ✗ {check.name}: {check.reason}", fg="red")
            elif check.warning:
                click.secho(f"     ⚠️  {check.name}: {check.reason}", fg="yellow")
            elif verbose:
                fixed = " (remediated)" if check.remediated else ""
                click.secho(f"     ✓ {check.name}{fixed}", fg="green")


def _print_summary(run, exit_code: int) -> None:
    if run.failures:
        click.echo()
        click.secho("   Failures:", fg="red", bold=True)
        for failure in run.failures:
            node = f"[{failure.node}] " if failure.node else ""
            click.secho(f"     • {node}{failure.message}", fg="red")
            if failure.remediation:
                click.echo(f"       → {failure.remediation}")

    if run.warnings:
        click.echo()
        click.secho("   ⚠️  Warnings:", fg="yellow")
        for warning in run.warnings:
            click.echo(f"     • {warning}")

    icon, color = _OUTCOME_STYLE.get(run.outcome.value, ("❔", "white"))
    click.echo()
    click.secho(f"{icon} {run.action} {run.environment}: {run.outcome.value}",
                fg=color, bold=True)
    if exit_code:
        click.echo(f"   exit code {exit_code}")
    click.echo()


def _print_plan(plan) -> None:
    click.secho(f"\n   📝 Plan ({plan.target})", bold=True)
    for step in plan.steps:
        scope = " (verify only)" if step.verify_only else ""
        note = f"  {step.note}" if step.note else ""
        color = {"create": "green", "update": "cyan", "wait": "yellow",
                 "unknown": "red"}.get(step.action, "white")
        click.secho(f"     {step.action:<7}", fg=color, nl=False)
        click.echo(f" {step.node_id:<12} {step.resource_name}{scope}{note}")


# ── Commands ────────────────────────────────────────────────────────


@cli.command()
@click.argument("environment")
@click.argument("action", type=click.Choice(list(DEPLOY_ACTIONS)))
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompts (CI).")
@click.option("--mock", is_flag=True, help="Use the simulated cloud (no real calls).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def deploy(
    ctx: click.Context,
    environment: str,
    action: str,
    yes: bool,
    mock: bool,
    as_json: bool,
) -> None:
    """Plan or apply the infra and/or app stage of ENVIRONMENT.

    Examples:

        rollout deploy dev plan-infra

        rollout deploy dev apply-infra

        rollout deploy prod apply --yes
    """
    from rollout.core.use_cases.deploy import deploy as run_deploy

    quiet = ctx.obj.get("quiet", False)
    if not as_json and not quiet:
        mode_label = "[mock] " if mock else ""
        click.secho(f"\n🚀 {mode_label}{action} — {environment}", fg="cyan", bold=True)

    result = run_deploy(
        environment,
        action,
        config_path=ctx.obj.get("config_path"),
        mock=mock,
        confirm=_confirm_policy(yes, as_json),
        progress=None if as_json or quiet else _print_node,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error and result.run is None:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(result.exit_code)

    if result.plan and action.startswith("plan"):
        _print_plan(result.plan)
        if result.plan_path:
            click.secho(f"\n   💾 Plan saved to {result.plan_path}", fg="cyan")

    assert result.run is not None
    _print_validations(result.run, ctx.obj.get("verbose", False))
    _print_summary(result.run, result.exit_code)
    sys.exit(result.exit_code)


@cli.command()
@click.argument("environment")
@click.argument("target", required=False, type=click.Choice(TARGETS))
@click.option("--target", "target_opt", type=click.Choice(TARGETS), default=None,
              help="What to destroy (default: all).")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompts (CI).")
@click.option("--mock", is_flag=True, help="Use the simulated cloud (no real calls).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def destroy(
    ctx: click.Context,
    environment: str,
    target: str | None,
    target_opt: str | None,
    yes: bool,
    mock: bool,
    as_json: bool,
) -> None:
    """Destroy the app, infra or all stages of ENVIRONMENT.

    Requires typing DELETE (DELETE PRODUCTION for protected
    environments) unless --yes is given.
    """
    from rollout.core.use_cases.destroy import destroy as run_destroy

    target = target_opt or target or "all"
    quiet = ctx.obj.get("quiet", False)
    if not as_json and not quiet:
        mode_label = "[mock] " if mock else ""
        click.secho(f"\n🔥 {mode_label}destroy {target} — {environment}", fg="red", bold=True)

    result = run_destroy(
        environment,
        target,
        config_path=ctx.obj.get("config_path"),
        mock=mock,
        confirm=_confirm_policy(yes, as_json),
        progress=None if as_json or quiet else _print_node,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error and result.run is None:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(result.exit_code)

    assert result.run is not None
    _print_validations(result.run, ctx.obj.get("verbose", False))
    _print_summary(result.run, result.exit_code)
    sys.exit(result.exit_code)


@cli.command()
@click.argument("environment")
@click.option("--infra", "target", flag_value="infra", help="Infra stage only.")
@click.option("--app", "target", flag_value="app", help="App stage only.")
@click.option("--all", "target", flag_value="all", default=True, help="Both stages (default).")
@click.option("--mock", is_flag=True, help="Use the simulated cloud (no real calls).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(
    ctx: click.Context,
    environment: str,
    target: str,
    mock: bool,
    as_json: bool,
) -> None:
    """Show the observed health of every node. Never mutates."""
    from rollout.core.use_cases.status import get_status

    result = get_status(
        environment,
        target,
        config_path=ctx.obj.get("config_path"),
        mock=mock,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(result.exit_code)

    click.secho(f"\n📋 {result.environment} ({result.target})", fg="cyan", bold=True)
    stage = None
    for outcome in result.nodes:
        if outcome.stage != stage:
            stage = outcome.stage
            click.secho(f"\n   {stage}", bold=True)
        _print_node(outcome)
        if ctx.obj.get("verbose") and outcome.details:
            for key, val in outcome.details.items():
                click.echo(f"       {key}: {val}")

    click.echo()
    if result.all_ready:
        click.secho("✅ All nodes ready", fg="green", bold=True)
    else:
        not_ready = [n.node_id for n in result.nodes if n.state.value != "ready"]
        click.secho(f"⚠️  Not ready: {', '.join(not_ready)}", fg="yellow", bold=True)
    click.echo()
    sys.exit(result.exit_code)


@cli.group()
def config() -> None:
    """Deployment configuration commands."""


@config.command("check")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def config_check(ctx: click.Context, as_json: bool) -> None:
    """Validate rollout.yml configuration."""
    from rollout.core.use_cases.config_check import check_config

    result = check_config(config_path=ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 1)

    if result.valid:
        assert result.config is not None  # guaranteed when valid
        click.secho("✅ Configuration is valid", fg="green", bold=True)
        click.echo(f"   Project: {result.config.project.project_id}")
        click.echo(f"   Domain: {result.config.project.domain}")
        for env in result.config.environments:
            flags = [env.topology.value]
            if env.default:
                flags.append("default")
            if env.protected:
                flags.append("protected")
            click.echo(f"     • {env.name} ({', '.join(flags)})")
    else:
        click.secho("❌ Configuration errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    if not result.valid:
        click.echo()
        sys.exit(1)

    click.echo()


@cli.command()
@click.option("--limit", "-n", default=20, type=int, help="Number of runs to show.")
@click.option("--env", "environment", default=None, help="Only this environment.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def history(ctx: click.Context, limit: int, environment: str | None, as_json: bool) -> None:
    """Show recent runs from the audit ledger."""
    from rollout.core.use_cases.history import get_history

    result = get_history(limit=limit, config_path=ctx.obj.get("config_path"),
                         environment=environment)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    if not result.entries:
        click.echo("No runs recorded yet.")
        return

    click.secho(f"\n📜 Last {len(result.entries)} run(s)", fg="cyan", bold=True)
    for entry in result.entries:
        icon, color = _OUTCOME_STYLE.get(entry.outcome, ("❔", "white"))
        mock = " [mock]" if entry.mock else ""
        click.secho(f"   {icon} {entry.outcome:<17}", fg=color, nl=False)
        click.echo(
            f" {entry.timestamp[:19]}  {entry.environment:<8} "
            f"{entry.action}{mock} ({entry.duration_ms / 1000:.1f}s)"
        )
        if ctx.obj.get("verbose"):
            for err in entry.errors:
                click.echo(f"       • {err}")
    click.echo()


if __name__ == "__main__":
    cli()
