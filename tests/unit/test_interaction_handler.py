"""Tests for interaction_handler module."""

from unittest.mock import patch

import click
import pytest

from vmdeploy.interaction_handler import CLIInteractionHandler, MockInteractionHandler

CHOICES = [("u", "Update in place"), ("d", "Delete and recreate"), ("c", "Cancel")]


class TestMockInteractionHandler:
    def test_choice_recorded(self):
        handler = MockInteractionHandler(choice_responses=["d"])

        assert handler.prompt_choice("Resource group exists", CHOICES) == "d"
        assert handler.get_interactions_by_type("choice")[0]["response"] == "d"

    def test_responses_consumed_in_order(self):
        handler = MockInteractionHandler(confirm_responses=[True, False])

        assert handler.confirm("first?") is True
        assert handler.confirm("second?") is False

    def test_running_out_raises(self):
        handler = MockInteractionHandler()

        with pytest.raises(IndexError, match="confirm"):
            handler.confirm("Continue?")

    def test_invalid_scripted_choice(self):
        handler = MockInteractionHandler(choice_responses=["x"])

        with pytest.raises(ValueError, match="Invalid"):
            handler.prompt_choice("Pick", CHOICES)

    def test_empty_choices(self):
        with pytest.raises(ValueError, match="empty"):
            MockInteractionHandler(choice_responses=["u"]).prompt_choice("Pick", [])

    def test_password_not_recorded(self):
        handler = MockInteractionHandler(password_responses=["S3cret!S3cret"])

        handler.prompt_password("Admin password")

        assert "S3cret!S3cret" not in str(handler.interactions)


class TestCLIInteractionHandler:
    def test_choice_lowercased(self):
        with patch("vmdeploy.interaction_handler.click.prompt", return_value="D"):
            assert CLIInteractionHandler().prompt_choice("Pick", CHOICES) == "d"

    def test_choice_interrupt_aborts(self):
        with patch("vmdeploy.interaction_handler.click.prompt", side_effect=KeyboardInterrupt):
            with pytest.raises(click.Abort):
                CLIInteractionHandler().prompt_choice("Pick", CHOICES)

    def test_empty_choices(self):
        with pytest.raises(ValueError):
            CLIInteractionHandler().prompt_choice("Pick", [])

    def test_password_reprompts_when_short(self, capsys):
        with patch(
            "vmdeploy.interaction_handler.click.prompt", side_effect=["short", "L0ng!enough12"]
        ) as prompt:
            password = CLIInteractionHandler().prompt_password("Admin password")

        assert password == "L0ng!enough12"
        assert prompt.call_count == 2
        assert "at least 12 characters" in capsys.readouterr().out

    def test_warning_goes_to_stderr(self, capsys):
        CLIInteractionHandler().show_warning("careful")

        assert "Warning: careful" in capsys.readouterr().err
