# cli.py
import asyncio
import json
import logging
import os
import sys

import click

from rollouts.errors import ConflictError, RolloutError, RolloutNotFoundError
from rollouts.machine import RolloutStateMachine
from rollouts.models import RolloutState
from rollouts.settings import get_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

EXIT_COMPLETE = 0
EXIT_CONFLICT = 1
EXIT_PROVISION_FAILED = 2
EXIT_ROLLED_BACK = 3
EXIT_HALTED = 4


def exit_code_for(state: RolloutState) -> int:
    if state == RolloutState.COMPLETE:
        return EXIT_COMPLETE
    if state == RolloutState.PROVISION_FAILED:
        return EXIT_PROVISION_FAILED
    if state == RolloutState.ROLLED_BACK:
        return EXIT_ROLLED_BACK
    return EXIT_HALTED


@click.group()
@click.option("--mode",
              type=click.Choice(["local-dev", "aws-mock", "aws-prod"]),
              default=None,
              help="Deployment mode (overrides DEPLOYMENT_MODE)")
def cli(mode):
    """CLI commands for blue/green rollouts"""
    if mode:
        os.environ["DEPLOYMENT_MODE"] = mode
        # Clear settings cache to pick up new mode
        get_settings.cache_clear()

    settings = get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO), format=LOG_FORMAT)


@cli.command()
@click.option("--unit", "unit_id", required=True, help="Deployable unit to roll out")
@click.option("--artifact", "artifact_ref", required=True, help="Artifact (task definition) to deploy")
@click.option("--size", type=click.IntRange(min=1), default=None, help="Targets in the candidate group")
def start(unit_id, artifact_ref, size):
    """Start a rollout and drive it to a terminal state"""

    async def run():
        machine = RolloutStateMachine.build()
        try:
            rollout = await machine.start(unit_id, artifact_ref, size)
            click.echo(rollout.id)
            try:
                rollout = await machine.wait(rollout.id)
            except RolloutError as e:
                click.echo(f"Rollout halted: {e}", err=True)
                return EXIT_HALTED
            if rollout.failure_reason:
                click.echo(f"{rollout.state.value} ({rollout.failure_reason})")
            else:
                click.echo(rollout.state.value)
            return exit_code_for(rollout.state)
        finally:
            await machine.shutdown()

    try:
        code = asyncio.run(run())
    except ConflictError as e:
        click.echo(f"Conflict: {e}", err=True)
        code = EXIT_CONFLICT
    sys.exit(code)


@cli.command()
@click.option("--id", "rollout_id", required=True, help="Rollout id")
def status(rollout_id):
    """Show state, split, health and failure reason of a rollout"""
    machine = RolloutStateMachine.build()
    try:
        info = machine.status(rollout_id)
    except RolloutNotFoundError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    click.echo(f"Rollout:  {info['rollout_id']}")
    click.echo(f"Unit:     {info['unit_id']}")
    click.echo(f"Artifact: {info['artifact_ref']}")
    click.echo(f"State:    {info['state']}")
    click.echo(f"Split:    {info['traffic_split']:.0%}")
    click.echo(f"Health:   {info['candidate_health'] or 'n/a'}")
    click.echo(f"Failure:  {info['failure_reason'] or '-'}")


@cli.command()
@click.option("--id", "rollout_id", required=True, help="Rollout id")
def cancel(rollout_id):
    """Request rollback of a rollout"""
    machine = RolloutStateMachine.build()
    try:
        accepted = machine.cancel(rollout_id)
    except RolloutNotFoundError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    if accepted:
        click.echo(f"Cancellation requested for {rollout_id}")
    else:
        click.echo(f"Rollout {rollout_id} can no longer be cancelled")
        sys.exit(1)


@cli.command()
@click.option("--id", "rollout_id", required=True, help="Rollout id")
@click.option("--json", "as_json", is_flag=True, help="Print entries as JSON lines")
def history(rollout_id, as_json):
    """Print the ledger entries of a rollout"""
    machine = RolloutStateMachine.build()
    try:
        entries = machine.history(rollout_id)
    except RolloutNotFoundError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    for entry in entries:
        if as_json:
            click.echo(json.dumps(entry.to_dict()))
            continue
        from_state = entry.from_state.value if entry.from_state else "-"
        click.echo(f"#{entry.sequence} {entry.timestamp.isoformat()} {from_state} -> {entry.to_state.value}")


@cli.command()
def resume():
    """Resume every unfinished rollout recorded in the ledger"""

    async def run():
        machine = RolloutStateMachine.build()
        try:
            rollouts = await machine.resume()
            if not rollouts:
                click.echo("No unfinished rollouts")
                return EXIT_COMPLETE
            code = EXIT_COMPLETE
            for rollout in rollouts:
                try:
                    rollout = await machine.wait(rollout.id)
                    click.echo(f"{rollout.id} {rollout.unit_id} {rollout.state.value}")
                    code = max(code, exit_code_for(rollout.state))
                except RolloutError as e:
                    click.echo(f"{rollout.id} halted: {e}", err=True)
                    code = EXIT_HALTED
            return code
        finally:
            await machine.shutdown()

    sys.exit(asyncio.run(run()))


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", default=8000, type=int, help="Port")
def serve(host, port):
    """Run the rollout HTTP API"""
    import uvicorn

    click.echo(f"Starting rollout API on {host}:{port}...")
    uvicorn.run("rollouts.main:create_app", factory=True, host=host, port=port)


@cli.command()
def show_config():
    """Show current configuration"""
    settings = get_settings()

    click.echo("Current Configuration:")
    click.echo(f"  Deployment Mode: {settings.deployment_mode}")
    click.echo(f"  AWS Region: {settings.aws_region}")
    click.echo(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    click.echo(f"  Ledger: {settings.ledger_db_path}")
    click.echo(f"  Target Count: {settings.default_target_count}")
    click.echo(f"  Ramp Steps: {settings.ramp_steps}")
    click.echo(f"  Step Bake: {settings.step_bake_seconds}s")
    click.echo(f"  Health Check Timeout: {settings.health_check_timeout_seconds}s")
    click.echo(f"  ECS Cluster: {settings.ecs_cluster}")
    click.echo(f"  ALB Listener: {settings.alb_listener_arn}")


if __name__ == "__main__":
    cli()
