"""
Approval gates for destructive operations.

The backup core never reads the terminal itself; it asks an approver.
InteractiveApprover prompts the operator, PolicyApprover answers from
configured policy for unattended runs.
"""

import click


# Actions the core may ask about
STOP_UNIT = 'stop_unit'
UNSAFE_BACKUP = 'unsafe_backup'
BULK_CLEANUP = 'bulk_cleanup'

BULK_CLEANUP_PHRASE = 'DELETE ALL'


class InteractiveApprover:
    """Ask the operator on the terminal."""

    interactive = True

    def confirm(self, action: str, message: str) -> bool:
        if action == BULK_CLEANUP:
            answer = click.prompt(
                f"{message}\nType '{BULK_CLEANUP_PHRASE}' to confirm",
                default='',
                show_default=False
            )
            return answer.strip() == BULK_CLEANUP_PHRASE
        return click.confirm(message, default=False)


class PolicyApprover:
    """
    Non-interactive approver.

    Stopping a unit and running an unsafe (live) backup are allowed because
    the configured policy already chose them. Bulk cleanup is refused unless
    explicitly allowed.
    """

    interactive = False

    def __init__(self, allow_bulk_cleanup: bool = False):
        self.allow_bulk_cleanup = allow_bulk_cleanup

    def confirm(self, action: str, message: str) -> bool:
        if action == BULK_CLEANUP:
            return self.allow_bulk_cleanup
        return True
