"""Tests for the prompts module."""

import pytest

from storyloop.lib.prompts import (
    load_prompt,
    render_prompt,
    build_section,
    build_iteration_instructions,
    strip_resume_section,
    clear_cache,
    PromptError,
)


class TestLoadPrompt:
    """Tests for load_prompt function."""

    def test_html_comments_stripped(self):
        """Should strip HTML comments from loaded prompts."""
        clear_cache()
        content = load_prompt("iteration")
        assert "<!--" not in content
        assert "{story_id}" in content

    def test_load_nonexistent_prompt_raises(self):
        """Should raise PromptError for missing template."""
        clear_cache()
        with pytest.raises(PromptError) as exc_info:
            load_prompt("nonexistent_prompt_xyz")
        assert "not found" in str(exc_info.value)

    def test_caching_works(self):
        clear_cache()
        assert load_prompt("resume") is load_prompt("resume")


class TestRenderPrompt:
    """Tests for render_prompt and build_section."""

    def test_missing_variable_raises(self):
        with pytest.raises(PromptError, match="Missing required variable"):
            render_prompt("resume", previous_session="abc")

    def test_build_section(self):
        assert build_section("body", "## Notes") == "## Notes\n\nbody\n"
        assert build_section(None, "## Notes") == ""
        assert build_section("", "## Notes", "(none)") == "## Notes\n\n(none)\n"


class TestIterationInstructions:
    """Tests for build_iteration_instructions."""

    def test_fresh_attempt(self):
        text = build_iteration_instructions("Build the CLI.", "US-002", "Add parser")
        assert text.startswith("Build the CLI.")
        assert "**US-002**: Add parser" in text
        assert "Resumed Attempt" not in text
        assert "summary.md" in text

    def test_default_plan_prompt(self):
        text = build_iteration_instructions("", "US-002", "Add parser")
        assert text.startswith("Implement the current story")

    def test_resume_carries_previous_transcript(self):
        text = build_iteration_instructions(
            "Build the CLI.", "US-002", "Add parser",
            previous_session="0123456789ab",
            previous_instructions="Old instructions",
            previous_summary="Parser half written",
        )
        assert "## Resumed Attempt" in text
        assert "`0123456789ab`" in text
        assert "Old instructions" in text
        assert "Parser half written" in text

    def test_resume_without_summary(self):
        text = build_iteration_instructions(
            "p", "US-002", "t", previous_session="0123456789ab",
        )
        assert "no summary was recorded" in text

    def test_repeated_resume_does_not_nest(self):
        first = build_iteration_instructions("Build the CLI.", "US-002", "Add parser")
        second = build_iteration_instructions(
            "Build the CLI.", "US-002", "Add parser",
            previous_session="aaaaaaaaaaaa",
            previous_instructions=first,
            previous_summary="First try",
        )
        third = build_iteration_instructions(
            "Build the CLI.", "US-002", "Add parser",
            previous_session="bbbbbbbbbbbb",
            previous_instructions=second,
            previous_summary="Second try",
        )

        assert third.count("## Resumed Attempt") == 1
        assert "`aaaaaaaaaaaa`" not in third
        assert "First try" not in third
        assert "Second try" in third
        assert strip_resume_section(second) == first.rstrip() + "\n"

    def test_untitled_story(self):
        text = build_iteration_instructions("p", "US-001", "")
        assert "**US-001**: (untitled)" in text
