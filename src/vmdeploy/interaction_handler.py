"""User interaction abstraction for the CLI and tests.

Orchestrators never call click prompts directly. They receive an
InteractionHandler so tests can script the operator's answers:

    >>> handler = MockInteractionHandler(choice_responses=["u"], confirm_responses=[True])
    >>> handler.prompt_choice("Choose action", [("u", "Update"), ("c", "Cancel")])
    'u'
"""

from typing import Protocol, runtime_checkable

import click

MIN_PASSWORD_LENGTH = 12


@runtime_checkable
class InteractionHandler(Protocol):
    """Protocol for operator interaction."""

    def prompt_choice(self, message: str, choices: list[tuple[str, str]]) -> str:
        """Prompt the operator to pick one of several keyed options.

        Args:
            message: Prompt message to display
            choices: List of (key, description) tuples, e.g. ("u", "Update in-place")

        Returns:
            The key of the selected choice

        Raises:
            ValueError: If choices is empty
            click.Abort: If the operator cancels (CLI implementation)
        """
        ...

    def confirm(self, message: str, default: bool = False) -> bool:
        """Prompt for yes/no confirmation."""
        ...

    def prompt_password(self, message: str, min_length: int = MIN_PASSWORD_LENGTH) -> str:
        """Prompt for a secret twice until both entries match and are long enough."""
        ...

    def show_warning(self, message: str) -> None:
        ...

    def show_info(self, message: str) -> None:
        ...


class CLIInteractionHandler:
    """Click-based terminal interaction handler."""

    def prompt_choice(self, message: str, choices: list[tuple[str, str]]) -> str:
        """Show keyed options and read one key.

        Displays each option as ``key) description`` with the key in cyan.
        Anything other than a listed key is rejected by click and re-prompted.
        """
        if not choices:
            raise ValueError("choices cannot be empty")

        click.echo()
        click.secho(message, bold=True)
        for key, description in choices:
            click.echo(f"  {click.style(key, fg='cyan')}) {description}")
        click.echo()

        keys = [key for key, _ in choices]
        try:
            return click.prompt(
                f"Choose action [{'/'.join(keys)}]",
                type=click.Choice(keys, case_sensitive=False),
                show_choices=False,
            ).lower()
        except KeyboardInterrupt:
            click.echo()
            raise click.Abort() from None

    def confirm(self, message: str, default: bool = False) -> bool:
        return click.confirm(click.style(message, fg="yellow"), default=default)

    def prompt_password(self, message: str, min_length: int = MIN_PASSWORD_LENGTH) -> str:
        """Read a password with hidden input and confirmation.

        Loops until the two entries match and the password has at least
        ``min_length`` characters.
        """
        click.echo(message)
        click.echo(
            f"(min {min_length} chars, must include uppercase, lowercase, "
            "number, and special char)"
        )
        while True:
            password = click.prompt(
                "Password",
                hide_input=True,
                confirmation_prompt="Confirm password",
            )
            if len(password) < min_length:
                click.secho(
                    f"Password must be at least {min_length} characters. Please try again.",
                    fg="red",
                )
                continue
            return password

    def show_warning(self, message: str) -> None:
        click.secho(f"Warning: {message}", fg="yellow", err=True)

    def show_info(self, message: str) -> None:
        click.secho(message, fg="green")


class MockInteractionHandler:
    """Interaction handler with pre-programmed responses for tests.

    Every interaction is recorded in ``interactions`` for later assertions.
    Running out of scripted responses raises IndexError so an unexpected
    prompt fails the test loudly.
    """

    def __init__(
        self,
        choice_responses: list[str] | None = None,
        confirm_responses: list[bool] | None = None,
        password_responses: list[str] | None = None,
    ):
        self.choice_responses = list(choice_responses or [])
        self.confirm_responses = list(confirm_responses or [])
        self.password_responses = list(password_responses or [])
        self.interactions: list[dict] = []

    def _next(self, responses: list, kind: str):
        if not responses:
            raise IndexError(f"No more {kind} responses available")
        return responses.pop(0)

    def prompt_choice(self, message: str, choices: list[tuple[str, str]]) -> str:
        if not choices:
            raise ValueError("choices cannot be empty")
        response = self._next(self.choice_responses, "choice")
        if response not in [key for key, _ in choices]:
            raise ValueError(f"Invalid pre-programmed response {response!r}")
        self.interactions.append(
            {"type": "choice", "message": message, "choices": choices, "response": response}
        )
        return response

    def confirm(self, message: str, default: bool = False) -> bool:
        response = self._next(self.confirm_responses, "confirm")
        self.interactions.append(
            {"type": "confirm", "message": message, "default": default, "response": response}
        )
        return response

    def prompt_password(self, message: str, min_length: int = MIN_PASSWORD_LENGTH) -> str:
        response = self._next(self.password_responses, "password")
        self.interactions.append({"type": "password", "message": message})
        return response

    def show_warning(self, message: str) -> None:
        self.interactions.append({"type": "warning", "message": message})

    def show_info(self, message: str) -> None:
        self.interactions.append({"type": "info", "message": message})

    def get_interactions_by_type(self, interaction_type: str) -> list[dict]:
        return [i for i in self.interactions if i["type"] == interaction_type]


__all__ = [
    "MIN_PASSWORD_LENGTH",
    "CLIInteractionHandler",
    "InteractionHandler",
    "MockInteractionHandler",
]
