"""Comparison pipeline: load volumes, run the driver, export and summarise."""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path

from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from voxcompare._console import console, err_console
from voxcompare.core.types import ComparisonConfig, ComparisonReport
from voxcompare.core.volume import Contour, Volume

logger = logging.getLogger("voxcompare")


def print_series_table(series_list: list[dict], input_path: Path) -> None:
    """Display a Rich table of the DICOM series in a directory."""
    table = Table(title=f"DICOM Series in {input_path}")
    table.add_column("#", style="bold", justify="right")
    table.add_column("Modality", style="green")
    table.add_column("Description", max_width=40)
    table.add_column("Slices", justify="right")
    table.add_column("Series UID", style="dim")

    for i, info in enumerate(series_list):
        table.add_row(
            f"#{i}",
            info["modality"],
            info["description"] or "(no desc)",
            str(info["slice_count"]),
            info["series_uid"],
        )
    console.print(table)


def print_report_table(reports: list[ComparisonReport]) -> None:
    """Display per-volume comparison results."""
    table = Table(title="Comparison Results")
    table.add_column("Volume", style="bold", max_width=40)
    table.add_column("Method", style="magenta")
    table.add_column("Processed", justify="right")
    table.add_column("Outside ROI", justify="right")
    table.add_column("Outside range", justify="right")
    table.add_column("Not found", justify="right", style="yellow")
    table.add_column("Pass rate", justify="right", style="green")
    table.add_column("Time", justify="right")

    for r in reports:
        rate = r.pass_rate
        table.add_row(
            r.volume_name or "(unnamed)",
            r.method_name,
            f"{r.voxels_processed:,} / {r.voxels_total:,}",
            f"{r.skipped_roi:,}",
            f"{r.skipped_threshold:,}",
            f"{r.not_found:,}",
            "-" if rate is None else f"{100.0 * rate:.1f}%",
            f"{r.processing_time:.1f}s",
        )
    console.print(table)


def make_output_path(output_dir: Path, volume: Volume, index: int) -> Path:
    """Output file for one compared volume: <dir>/<index>_<name>.npz."""
    stem = re.sub(r"[^A-Za-z0-9_.-]+", "_", volume.name).strip("_") or "volume"
    return output_dir / f"{index:02d}_{stem}.npz"


def load_contours_for(roi_path: Path | None, roi_regex: str) -> list[Contour] | None:
    """Read and filter RTSTRUCT contours, or None when no ROI file is given."""
    if roi_path is None:
        return None
    from voxcompare.io.rtstruct_reader import load_contours
    from voxcompare.roi import select_contours

    return select_contours(load_contours(roi_path), roi_regex)


def run_comparison(
    test_path: Path,
    ref_path: Path,
    config: ComparisonConfig,
    output_dir: Path | None,
    test_select: str = "all",
    ref_select: str = "last",
    roi_path: Path | None = None,
    roi_regex: str = ".*",
) -> list[ComparisonReport]:
    """Execute the comparison pipeline and export the compared test volumes."""
    from voxcompare.engine import compare_volumes
    from voxcompare.io.dicom_reader import load_volumes
    from voxcompare.io.exporters import export_npz
    from voxcompare.selection import select_reference, select_volumes

    start_time = time.time()

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(bar_width=20),
        MofNCompleteColumn(),
        console=console,
    ) as progress:
        # Step 1: Load volumes and contours
        task = progress.add_task("Loading DICOM data...", total=None)
        test_volumes = select_volumes(load_volumes(test_path), test_select)
        reference = select_reference(load_volumes(ref_path), ref_select)
        contours = load_contours_for(roi_path, roi_regex)
        progress.remove_task(task)
        if not test_volumes:
            raise ValueError(f"No test volumes selected by '{test_select}'")

        # Step 2: Compare
        task = progress.add_task(f"Comparing with {config.method}...", total=None)

        def on_progress(desc, current=None, total=None):
            if total is not None:
                progress.update(task, description=desc, completed=current, total=total)
            else:
                progress.update(task, description=desc)

        reports = compare_volumes(
            test_volumes, reference, config, contours=contours, progress=on_progress
        )
        progress.remove_task(task)

        # Step 3: Export
        if output_dir is not None:
            task = progress.add_task("Exporting results...", total=len(test_volumes))
            for i, volume in enumerate(test_volumes):
                path = make_output_path(output_dir, volume, i)
                export_npz(volume, path, config.channel)
                logger.debug(f"Exported '{volume.name}' to {path}")
                progress.update(task, advance=1)
            progress.remove_task(task)

    elapsed = time.time() - start_time
    print_report_table(reports)
    console.print(f"\n[green]Comparison complete![/green]")
    console.print(f"  Reference: {reference.name or ref_path}")
    console.print(f"  Method:    {config.method}")
    if output_dir is not None:
        console.print(f"  Output:    {output_dir}")
    console.print(f"  Time:      {elapsed:.1f}s")

    for r in reports:
        for w in r.warnings:
            err_console.print(f"[yellow]Warning ({r.volume_name}): {w}[/yellow]")
    return reports
