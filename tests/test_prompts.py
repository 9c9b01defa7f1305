"""Tests for prompt templates."""

import pytest

from autonomous_dev_pipeline.prompts import PACKAGE_PROMPTS_DIR, PromptLibrary


STAGE_PROMPTS = [
    "research", "evaluate", "plan", "implement", "task_review", "quality_review",
    "quality_fix", "test_run", "test_validate", "test_fix", "docs",
    "non_functional_change", "spec_review", "code_review", "review_fix",
]


class TestPromptLibrary:
    @pytest.mark.parametrize("name", STAGE_PROMPTS)
    def test_packaged_templates_render(self, name):
        text = PromptLibrary().render(name, issue_title="Add a widget", task_id=1)
        assert text.strip()

    def test_override_dir_wins(self, tmp_path):
        (tmp_path / "plan.md").write_text("Custom plan for {issue_title}")
        library = PromptLibrary(tmp_path)
        assert library.render("plan", issue_title="X") == "Custom plan for X"
        assert library.load("research") == (PACKAGE_PROMPTS_DIR / "research.md").read_text()

    def test_missing_placeholders_render_blank(self, tmp_path):
        (tmp_path / "t.md").write_text("a={a} b={b}")
        assert PromptLibrary(tmp_path).render("t", a=1) == "a=1 b="

    def test_unknown_template(self):
        with pytest.raises(FileNotFoundError):
            PromptLibrary().load("does-not-exist")
