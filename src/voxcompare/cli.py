"""CLI entry point for voxcompare."""

from __future__ import annotations

import logging
from pathlib import Path

import typer

from voxcompare import __version__
from voxcompare._console import console, err_console

app = typer.Typer(
    name="voxcompare",
    help="Compare test image volumes against a reference volume voxel by voxel.",
    add_completion=False,
)


def version_callback(value: bool):
    if value:
        console.print(f"voxcompare {__version__}")
        raise typer.Exit()


def list_methods_callback(value: bool):
    if value:
        from voxcompare.methods.registry import list_methods

        console.print("\n[bold]Available comparison methods:[/bold]\n")
        for m in list_methods():
            console.print(f"  [bold]{m['name']:<14}[/bold] {m['description']}")
            console.print(f"  {'':14} Best for: {m['recommended_for']}")
            console.print()
        raise typer.Exit()


@app.command()
def main(
    test_path: Path = typer.Argument(
        ...,
        help="DICOM file or directory holding the test volume(s).",
        exists=True,
    ),
    ref_path: Path = typer.Argument(
        ...,
        help="DICOM file or directory holding the reference volume.",
        exists=True,
    ),
    output: Path = typer.Option(
        None,
        "-o",
        "--output",
        help="Output directory for compared volumes (default: <test>/compared).",
    ),
    method: str = typer.Option(
        "gamma-index",
        "-m",
        "--method",
        help="Comparison method: gamma-index, dta, discrepancy (prefixes accepted).",
    ),
    channel: int = typer.Option(0, "--channel", help="Image channel to compare.", min=0),
    test_lower: str = typer.Option(
        "-inf", "--test-lower", help="Lowest test value compared (number, N% or Ntile)."
    ),
    test_upper: str = typer.Option(
        "inf", "--test-upper", help="Highest test value compared (number, N% or Ntile)."
    ),
    ref_lower: str = typer.Option(
        "-inf", "--ref-lower", help="Lowest reference value used (number, N% or Ntile)."
    ),
    ref_upper: str = typer.Option(
        "inf", "--ref-upper", help="Highest reference value used (number, N% or Ntile)."
    ),
    dta_abs: float = typer.Option(
        1.0e-3, "--dta-abs", help="DTA: absolute value difference counted as a match."
    ),
    dta_rel: float = typer.Option(
        1.0, "--dta-rel", help="DTA: relative difference (%) counted as a match."
    ),
    dta_max: float = typer.Option(
        30.0, "--dta-max", help="Maximum search distance in mm (DTA and gamma-index)."
    ),
    gamma_dta: float = typer.Option(
        5.0, "--gamma-dta", help="Gamma-index distance criterion in mm."
    ),
    gamma_disc: float = typer.Option(
        5.0, "--gamma-disc", help="Gamma-index discrepancy criterion in %."
    ),
    terminate: bool = typer.Option(
        True,
        "--terminate/--no-terminate",
        help="Stop the gamma-index search once the result is known to exceed 1.",
    ),
    discrepancy_type: str = typer.Option(
        "relative", "--discrepancy-type", help="Discrepancy: relative (%) or absolute."
    ),
    test_select: str = typer.Option(
        "all",
        "--test-select",
        help="Test series to compare: all, first, last, #N, or a name regex.",
    ),
    ref_select: str = typer.Option(
        "last",
        "--ref-select",
        help="Reference series: first, last, #N, or a name regex (must match one).",
    ),
    roi: Path = typer.Option(
        None,
        "--roi",
        help="RTSTRUCT file; only voxels inside the selected contours are compared.",
        exists=True,
    ),
    roi_regex: str = typer.Option(
        ".*", "--roi-regex", help="ROI names to use from --roi (case-insensitive regex)."
    ),
    workers: int = typer.Option(
        None, "-j", "--workers", help="Worker threads (default: CPU count).", min=1
    ),
    no_export: bool = typer.Option(
        False, "--no-export", help="Only print the summary, do not write results."
    ),
    do_list_series: bool = typer.Option(
        False,
        "--list-series",
        help="List DICOM series found in the test and reference paths and exit.",
    ),
    do_list_methods: bool = typer.Option(
        False,
        "--list-methods",
        callback=list_methods_callback,
        is_eager=True,
        help="List available comparison methods and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "-v",
        "--verbose",
        help="Show detailed processing information.",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
):
    """Compare test image volumes against a reference volume voxel by voxel.

    Each compared test voxel is replaced by its gamma-index, distance to
    agreement, or discrepancy with respect to the reference.
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    try:
        if do_list_series:
            from voxcompare._pipeline_compare import print_series_table
            from voxcompare.io.dicom_reader import list_series

            for path in (test_path, ref_path):
                if path.is_dir():
                    print_series_table(list_series(path), path)
            raise typer.Exit()

        from voxcompare._pipeline_compare import run_comparison
        from voxcompare.config import parse_comparison_config

        config = parse_comparison_config(
            {
                "Method": method,
                "Channel": str(channel),
                "TestImgLowerThreshold": test_lower,
                "TestImgUpperThreshold": test_upper,
                "RefImgLowerThreshold": ref_lower,
                "RefImgUpperThreshold": ref_upper,
                "DTAVoxValEqAbs": repr(dta_abs),
                "DTAVoxValEqRelDiff": repr(dta_rel),
                "DTAMax": repr(dta_max),
                "GammaDTAThreshold": repr(gamma_dta),
                "GammaDiscThreshold": repr(gamma_disc),
                "GammaTerminateAboveOne": str(terminate).lower(),
                "DiscrepancyType": discrepancy_type,
            },
            max_workers=workers,
        )

        if no_export:
            output_dir = None
        elif output is not None:
            output_dir = output
        else:
            base = test_path if test_path.is_dir() else test_path.parent
            output_dir = base / "compared"

        run_comparison(
            test_path=test_path,
            ref_path=ref_path,
            config=config,
            output_dir=output_dir,
            test_select=test_select,
            ref_select=ref_select,
            roi_path=roi,
            roi_regex=roi_regex,
        )
    except typer.Exit:
        raise
    except ValueError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)
    except FileNotFoundError as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=4)
    except Exception as e:
        err_console.print(f"[red]Error: {e}[/red]")
        if verbose:
            import traceback
            err_console.print(traceback.format_exc())
        raise typer.Exit(code=1)
