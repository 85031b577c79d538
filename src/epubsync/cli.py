"""
Command-line interface for epubsync.

Aligns a directory of XHTML pages against a narration file, stores the
sync records and writes one SMIL media overlay per page.
"""

import asyncio
import re
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import click
from tqdm import tqdm

from . import __version__
from .audio import get_audio_duration
from .config import SyncConfig
from .models import Granularity, JobContext, PageInput, SyncReport
from .pipeline import SyncPipeline
from .utils import EpubSyncError, format_duration, get_logger, setup_logging

logger = get_logger(__name__)

PAGE_PATTERNS = ("*.xhtml", "*.html", "*.htm")


def _page_sort_key(path: Path):
    numbers = re.findall(r"\d+", path.stem)
    return (int(numbers[-1]) if numbers else sys.maxsize, path.name)


def load_pages(pages_dir: str) -> List[PageInput]:
    """
    Read XHTML pages from a directory.

    The page number is the last number in the file name (page_12.xhtml
    is page 12); files without a number are numbered after the rest.

    Raises:
        EpubSyncError: If the directory contains no pages
    """
    directory = Path(pages_dir)
    paths = sorted({p for pattern in PAGE_PATTERNS for p in directory.glob(pattern)}, key=_page_sort_key)
    if not paths:
        raise EpubSyncError(f"No XHTML pages found in {pages_dir}")

    pages = []
    used = set()
    for index, path in enumerate(paths, start=1):
        numbers = re.findall(r"\d+", path.stem)
        page_number = int(numbers[-1]) if numbers else index
        while page_number in used or page_number < 1:
            page_number += 1
        used.add(page_number)
        pages.append(
            PageInput(
                page_number=page_number,
                xhtml=path.read_text(encoding="utf-8"),
                xhtml_filename=path.name,
            )
        )
    return pages


def build_config(
    strategy: str,
    database_url: Optional[str],
    gemini_api_key: Optional[str],
    forced_backend: Optional[str],
) -> SyncConfig:
    """Apply CLI overrides on top of the environment configuration."""
    config = SyncConfig.from_env()
    if database_url:
        config = replace(config, database_url=database_url)
    if gemini_api_key:
        config = replace(config, gemini_api_key=gemini_api_key)
    if forced_backend:
        config = replace(config, forced_backend=forced_backend)

    if strategy in ("semantic", "linear"):
        config = replace(config, forced_backend="none")
    if strategy in ("forced", "linear"):
        config = replace(config, gemini_api_key=None)
    return config


@click.command()
@click.version_option(version=__version__, prog_name="epubsync")
@click.argument("pages_dir", type=click.Path(exists=True, file_okay=False))
@click.argument("audio_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-o",
    "--output",
    "output_dir",
    required=True,
    type=click.Path(file_okay=False),
    help="Directory for the generated SMIL files",
)
@click.option(
    "-g",
    "--granularity",
    default="sentence",
    type=click.Choice([g.value for g in Granularity]),
    help="Fragment level to align. Default: sentence",
)
@click.option(
    "-s",
    "--strategy",
    default="auto",
    type=click.Choice(["auto", "forced", "semantic", "linear"]),
    help="Restrict the strategy chain. Default: auto (forced, semantic, linear)",
)
@click.option(
    "--forced-backend",
    type=click.Choice(["aeneas", "whisperx", "none"]),
    help="Forced aligner backend (or set EPUBSYNC_FORCED_BACKEND)",
)
@click.option(
    "-l",
    "--language",
    default="eng",
    help="Narration language (ISO 639-3, e.g. 'eng', 'spa'). Default: eng",
)
@click.option(
    "--database-url",
    envvar="EPUBSYNC_DATABASE_URL",
    help="SQLAlchemy URL for sync records. Default: sqlite:///epubsync.db",
)
@click.option("--job-id", default=1, type=int, help="Conversion job id. Default: 1")
@click.option("--pdf-id", default=None, type=int, help="PDF document id")
@click.option(
    "--audio-src",
    default=None,
    help="Audio reference written in the SMIL files. Default: audio file name",
)
@click.option(
    "--no-propagate-words",
    is_flag=True,
    help="Do not derive word timings inside aligned sentences/paragraphs",
)
@click.option(
    "--disable-default-exclusions",
    is_flag=True,
    help="Sync tables of contents, running headers and stored exclusions too",
)
@click.option(
    "--reset",
    is_flag=True,
    help="Delete the job's stored sync records before aligning",
)
@click.option(
    "--gemini-api-key",
    envvar="GEMINI_API_KEY",
    help="Gemini API key for semantic alignment (or set GEMINI_API_KEY)",
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    help="Enable verbose logging",
)
@click.option(
    "--log-file",
    type=click.Path(),
    help="Optional log file path",
)
def main(
    pages_dir,
    audio_path,
    output_dir,
    granularity,
    strategy,
    forced_backend,
    language,
    database_url,
    job_id,
    pdf_id,
    audio_src,
    no_propagate_words,
    disable_default_exclusions,
    reset,
    gemini_api_key,
    verbose,
    log_file,
):
    """
    epubsync - audio/text synchronization for EPUB3 media overlays

    Align XHTML pages with their narration and write SMIL files.

    \b
    Arguments:
        PAGES_DIR: Directory of XHTML pages (page_1.xhtml, page_2.xhtml, ...)
        AUDIO_PATH: Narration audio file (MP3, WAV, etc.)

    \b
    Example:
        epubsync pages/ narration.mp3 -o smil/
        epubsync pages/ narration.mp3 -o smil/ -g word --strategy linear
    """
    setup_logging(verbose=verbose, log_file=log_file)

    click.echo(f"\n{'='*60}")
    click.echo(f"epubsync v{__version__} - EPUB3 media overlay synchronization")
    click.echo(f"{'='*60}\n")

    config = build_config(strategy, database_url, gemini_api_key, forced_backend)
    if strategy == "semantic" and not config.semantic_enabled:
        click.echo("⚠️  Warning: semantic strategy requested but no GEMINI_API_KEY is set", err=True)

    try:
        report = asyncio.run(
            run_pipeline(
                pages_dir=pages_dir,
                audio_path=audio_path,
                output_dir=output_dir,
                config=config,
                granularity=Granularity(granularity),
                language=language,
                job_id=job_id,
                pdf_id=pdf_id,
                audio_src=audio_src,
                propagate_words=not no_propagate_words,
                disable_default_exclusions=disable_default_exclusions,
                reset=reset,
            )
        )

        display_summary(report, output_dir)
        click.echo(f"\n✅ Success! Media overlays saved to: {output_dir}\n")
        sys.exit(0)

    except EpubSyncError as e:
        click.echo(f"\n❌ Error: {e}\n", err=True)
        logger.error(f"Pipeline failed: {e}", exc_info=True)
        sys.exit(1)

    except KeyboardInterrupt:
        click.echo("\n\n⚠️  Interrupted by user\n", err=True)
        sys.exit(130)

    except Exception as e:
        click.echo(f"\n❌ Unexpected error: {e}\n", err=True)
        logger.error(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)


async def run_pipeline(
    pages_dir: str,
    audio_path: str,
    output_dir: str,
    config: SyncConfig,
    granularity: Granularity = Granularity.SENTENCE,
    language: str = "eng",
    job_id: int = 1,
    pdf_id: Optional[int] = None,
    audio_src: Optional[str] = None,
    propagate_words: bool = True,
    disable_default_exclusions: bool = False,
    reset: bool = False,
) -> SyncReport:
    """
    Run alignment for one directory of pages and write the overlays.

    Returns:
        SyncReport of the run
    """
    pipeline = SyncPipeline.from_config(config)

    try:
        with tqdm(total=4, desc="Pipeline Progress", unit="phase") as pbar:
            click.echo("📄 Phase 1/4: Loading XHTML pages...")
            pbar.set_description("Loading pages")
            pages = load_pages(pages_dir)
            click.echo(f"   ✓ Loaded {len(pages)} pages")
            pbar.update(1)

            click.echo("\n🎵 Phase 2/4: Reading audio...")
            pbar.set_description("Reading audio")
            duration = get_audio_duration(audio_path)
            click.echo(f"   ✓ Audio duration: {format_duration(duration)}")
            pbar.update(1)

            click.echo("\n🔧 Phase 3/4: Aligning text and audio...")
            pbar.set_description("Aligning")
            if reset:
                pipeline.store.delete_by_job(job_id)

            job = JobContext(
                job_id=job_id,
                pdf_document_id=pdf_id,
                audio_path=str(audio_path),
                audio_duration=duration,
                pages=pages,
                granularity=granularity,
                propagate_words=propagate_words,
                disable_default_exclusions=disable_default_exclusions,
                language=language,
            )
            report = await pipeline.run_job(job)
            click.echo(
                f"   ✓ Aligned with {report.strategy_used.value}: "
                f"{report.persisted} records stored"
            )
            pbar.update(1)

            click.echo("\n💾 Phase 4/4: Writing media overlays...")
            pbar.set_description("Writing SMIL")
            written = pipeline.write_overlays(
                job_id,
                output_dir,
                page_filenames={p.page_number: p.filename for p in pages},
                audio_src=audio_src or Path(audio_path).name,
            )
            click.echo(f"   ✓ Wrote {len(written)} SMIL files")
            pbar.update(1)
    finally:
        await pipeline.aclose()

    return report


def display_summary(report: SyncReport, output_dir: str):
    """
    Display run summary: strategy, counts, warnings and errors.

    Args:
        report: SyncReport of the run
        output_dir: Directory the overlays were written to
    """
    click.echo(f"\n{'='*60}")
    click.echo("Summary")
    click.echo(f"{'='*60}")

    strategy = report.strategy_used.value
    if report.degraded:
        strategy += " (degraded: proportional estimate, no audio analysis)"
    click.echo(f"Strategy:      {strategy}")
    click.echo(f"Persisted:     {report.persisted} records")
    click.echo(f"Excluded:      {report.excluded} fragments marked unspoken")
    click.echo(f"Pruned:        {report.pruned} stale records")
    click.echo(f"Rejected:      {report.rejected} records failed validation")
    click.echo(
        f"Validation:    {report.validation.error_count} errors, "
        f"{report.validation.warning_count} warnings"
    )
    click.echo(f"Output:        {Path(output_dir).resolve()}")

    for warning in report.warnings:
        click.echo(f"⚠️  {warning}", err=True)
    for issue in report.validation.errors[:10]:
        click.echo(f"❌ {issue.fragment_id}: {issue.message}", err=True)

    click.echo(f"{'='*60}")


if __name__ == "__main__":
    main()
