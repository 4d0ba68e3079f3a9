"""
Confirmation gate — one interface for every "type X to confirm" prompt.

A gate is any callable ``confirm(message, required_phrase) -> bool``.
The CLI passes an interactive prompt; CI passes ``AutoApprove`` via
``--yes``; tests pass ``Deny`` or a scripted answer list. Nothing is
cached: every run asks again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

import click

from rollout.core.models.config import ResolvedEnvironment
from rollout.core.models.resource import ResourceNode

logger = logging.getLogger(__name__)

Confirm = Callable[[str, str], bool]

DESTROY_PHRASE = "DELETE"
DESTROY_PROTECTED_PHRASE = "DELETE PRODUCTION"
DEPLOY_PROTECTED_PHRASE = "PRODUCTION"
YES = "yes"


def interactive(message: str, required_phrase: str) -> bool:
    """Prompt on the terminal; only the exact phrase confirms."""
    click.secho(message, fg="yellow")
    try:
        answer = click.prompt(
            f"Type '{required_phrase}' to confirm",
            default="",
            show_default=False,
        )
    except click.Abort:
        click.echo()
        return False
    return answer.strip() == required_phrase


class AutoApprove:
    """Non-interactive policy that accepts every gate (``--yes``)."""

    def __call__(self, message: str, required_phrase: str) -> bool:
        logger.info("Auto-approved confirmation '%s'", required_phrase)
        return True


class Deny:
    """Non-interactive policy that rejects every gate."""

    def __call__(self, message: str, required_phrase: str) -> bool:
        logger.info("Denied confirmation '%s'", required_phrase)
        return False


class Scripted:
    """Answers gates from a fixed list of typed phrases, in order."""

    def __init__(self, answers: Iterable[str]):
        self._answers = list(answers)
        self.asked: list[tuple[str, str]] = []

    def __call__(self, message: str, required_phrase: str) -> bool:
        self.asked.append((message, required_phrase))
        if not self._answers:
            return False
        return self._answers.pop(0) == required_phrase


def policy(yes: bool = False) -> Confirm:
    return AutoApprove() if yes else interactive


# ── Gates ───────────────────────────────────────────────────────────


def confirm_deploy(confirm: Confirm, env: ResolvedEnvironment, summary: str) -> bool:
    """Ask before mutating; protected environments need the stronger phrase."""
    if env.environment.protected:
        message = (
            f"⚠️  You are about to deploy to PRODUCTION environment '{env.name}' "
            f"(project {env.project.project_id}).\n{summary}"
        )
        return confirm(message, DEPLOY_PROTECTED_PHRASE)
    return confirm(f"Deploy to '{env.name}'?\n{summary}", YES)


def confirm_destroy(
    confirm: Confirm,
    env: ResolvedEnvironment,
    target: str,
    nodes: list[ResourceNode],
) -> bool:
    """Two-step destroy confirmation listing everything that will go."""
    listing = "\n".join(f"  - {n.id}: {n.resource_name}" for n in nodes)
    if env.environment.protected:
        message = (
            f"🚨 PRODUCTION environment '{env.name}': destroying target '{target}' "
            f"will permanently delete:\n{listing}"
        )
        phrase = DESTROY_PROTECTED_PHRASE
    else:
        message = (
            f"Destroying target '{target}' in '{env.name}' will delete:\n{listing}"
        )
        phrase = DESTROY_PHRASE

    if not confirm(message, phrase):
        return False
    return confirm("Are you absolutely sure?", YES)


def backup_command(env: ResolvedEnvironment) -> str:
    return (
        f"kubectl --context={env.kube_context} exec -n {env.project.namespace} "
        f"statefulset/postgres -- pg_dump -U n8n n8n > backup.sql"
    )


def confirm_data_loss(
    confirm: Confirm,
    env: ResolvedEnvironment,
    stateful: list[ResourceNode],
) -> bool:
    """Gate for state-bearing nodes; asked once per run."""
    listing = "\n".join(f"  - {n.id}: {n.resource_name}" for n in stateful)
    message = (
        "💾 The following resources hold data that will be lost for good:\n"
        f"{listing}\n"
        f"Back up the database first, e.g.:\n  {backup_command(env)}\n"
        "Have you completed backups?"
    )
    return confirm(message, YES)
