"""
Unit tests for CLI interface.
"""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import numpy as np
import pytest
import soundfile as sf
from click.testing import CliRunner

from conftest import PAGE_ONE, PAGE_TWO
from epubsync.cli import build_config, load_pages, main
from epubsync.models import AlignmentSource, SyncReport, ValidationIssue, ValidationReport
from epubsync.utils import EpubSyncError


def make_report(strategy=AlignmentSource.FORCED_ALIGNMENT):
    return SyncReport(
        job_id=1,
        strategy_used=strategy,
        persisted=4,
        excluded=1,
        pruned=0,
        rejected=0,
        validation=ValidationReport(),
    )


class TestCLI:
    """Tests for CLI interface."""

    @pytest.fixture
    def runner(self):
        """Create a Click test runner."""
        return CliRunner()

    @pytest.fixture
    def book(self, tmp_path):
        """Create a pages directory and a 40 second narration file."""
        pages_dir = tmp_path / "pages"
        pages_dir.mkdir()
        (pages_dir / "page_1.xhtml").write_text(PAGE_ONE, encoding="utf-8")
        (pages_dir / "page_2.xhtml").write_text(PAGE_TWO, encoding="utf-8")

        audio_path = tmp_path / "narration.wav"
        sf.write(str(audio_path), np.zeros(16000 * 40, dtype=np.float32), 16000)

        return str(pages_dir), str(audio_path), str(tmp_path / "smil")

    def test_version(self, runner):
        """Test --version flag."""
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "epubsync" in result.output

    def test_help(self, runner):
        """Test --help flag."""
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "PAGES_DIR" in result.output
        assert "AUDIO_PATH" in result.output

    def test_missing_arguments(self, runner):
        """Test CLI with missing required arguments."""
        result = runner.invoke(main, [])
        assert result.exit_code != 0

    def test_missing_output(self, runner, book):
        """Test CLI with missing output option."""
        pages_dir, audio_path, _ = book

        result = runner.invoke(main, [pages_dir, audio_path])
        assert result.exit_code != 0

    @patch("epubsync.cli.run_pipeline", new_callable=AsyncMock)
    def test_basic_usage(self, mock_pipeline, runner, book):
        """Test basic CLI usage with mocked pipeline."""
        pages_dir, audio_path, output_dir = book
        mock_pipeline.return_value = make_report()

        result = runner.invoke(main, [pages_dir, audio_path, "-o", output_dir, "-g", "word", "-l", "spa"])

        assert result.exit_code == 0
        assert "Success" in result.output
        assert "forced_alignment" in result.output
        call_kwargs = mock_pipeline.call_args[1]
        assert call_kwargs["language"] == "spa"
        assert call_kwargs["granularity"].value == "word"
        assert call_kwargs["propagate_words"] is True

    @patch("epubsync.cli.run_pipeline", new_callable=AsyncMock)
    def test_degraded_summary(self, mock_pipeline, runner, book):
        """Test the summary flags linear spread as degraded and lists errors."""
        pages_dir, audio_path, output_dir = book
        report = make_report(AlignmentSource.LINEAR_SPREAD)
        report.validation.errors.append(ValidationIssue("page1_p1_s1", "exceeds_duration", "too late"))
        report.warnings.append("forced_alignment unavailable: not installed")
        mock_pipeline.return_value = report

        result = runner.invoke(main, [pages_dir, audio_path, "-o", output_dir])

        assert result.exit_code == 0
        assert "degraded" in result.output
        assert "too late" in result.output
        assert "not installed" in result.output

    @patch("epubsync.cli.run_pipeline", new_callable=AsyncMock)
    def test_error_handling(self, mock_pipeline, runner, book):
        """Test CLI error handling."""
        pages_dir, audio_path, output_dir = book
        mock_pipeline.side_effect = EpubSyncError("Test error")

        result = runner.invoke(main, [pages_dir, audio_path, "-o", output_dir])

        assert result.exit_code == 1
        assert "Test error" in result.output

    @patch("epubsync.cli.run_pipeline", new_callable=AsyncMock)
    def test_keyboard_interrupt(self, mock_pipeline, runner, book):
        """Test CLI handling of keyboard interrupt."""
        pages_dir, audio_path, output_dir = book
        mock_pipeline.side_effect = KeyboardInterrupt()

        result = runner.invoke(main, [pages_dir, audio_path, "-o", output_dir])

        assert result.exit_code == 130
        assert "Interrupted" in result.output

    def test_end_to_end_linear(self, runner, book):
        """Test a full run with linear spread writes one overlay per page."""
        pages_dir, audio_path, output_dir = book

        result = runner.invoke(
            main,
            [pages_dir, audio_path, "-o", output_dir, "--strategy", "linear", "--database-url", "sqlite://"],
        )

        assert result.exit_code == 0, result.output
        assert "linear_spread" in result.output
        content = (Path(output_dir) / "page_1.smil").read_text(encoding="utf-8")
        assert 'src="narration.wav"' in content
        assert "page_1.xhtml#page1_p1_s1_w1" in content


class TestLoadPages:
    """Tests for page loading."""

    def test_page_numbers_from_file_names(self, tmp_path):
        """Test pages are numbered by the last number in their name."""
        (tmp_path / "page_10.xhtml").write_text(PAGE_TWO, encoding="utf-8")
        (tmp_path / "page_2.xhtml").write_text(PAGE_ONE, encoding="utf-8")
        (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")

        pages = load_pages(str(tmp_path))

        assert [(p.page_number, p.filename) for p in pages] == [(2, "page_2.xhtml"), (10, "page_10.xhtml")]

    def test_unnumbered_pages(self, tmp_path):
        """Test files without numbers still get unique page numbers."""
        (tmp_path / "page_1.xhtml").write_text(PAGE_ONE, encoding="utf-8")
        (tmp_path / "colophon.html").write_text(PAGE_TWO, encoding="utf-8")

        pages = load_pages(str(tmp_path))

        assert [p.page_number for p in pages] == [1, 2]
        assert pages[1].filename == "colophon.html"

    def test_empty_directory(self, tmp_path):
        """Test a directory without pages is an error."""
        with pytest.raises(EpubSyncError):
            load_pages(str(tmp_path))


class TestBuildConfig:
    """Tests for CLI configuration overrides."""

    def test_linear_disables_aligners(self, monkeypatch):
        """Test the linear strategy turns off forced and semantic alignment."""
        monkeypatch.setenv("GEMINI_API_KEY", "from-env")

        config = build_config("linear", "sqlite://", None, None)

        assert config.forced_backend == "none"
        assert not config.semantic_enabled
        assert config.database_url == "sqlite://"

    def test_semantic_only(self, monkeypatch):
        """Test the semantic strategy turns off forced alignment only."""
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)

        config = build_config("semantic", None, "cli-key", "whisperx")

        assert config.forced_backend == "none"
        assert config.gemini_api_key == "cli-key"

    def test_auto_keeps_overrides(self, monkeypatch):
        """Test auto strategy keeps the requested backend."""
        monkeypatch.delenv("EPUBSYNC_FORCED_BACKEND", raising=False)

        config = build_config("auto", None, None, "whisperx")

        assert config.forced_backend == "whisperx"
