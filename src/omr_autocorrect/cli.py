from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, NoReturn, Optional

import cv2 as cv
import typer
from rich import print as rprint
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .align_core import register, warp_to_layout
from .anchors import detect_anchors
from .config_io import dump_any, dump_json, load_answer_key, load_config_any, load_layout, save_layout
from .defaults import DEFAULTS, DetectionDefaults, apply_overrides, load_defaults
from .errors import OMRError
from .grade_core import grade_batch, grade_image, write_results_csv
from .image_io import load_image
from .layout import answer_key_from_layout
from .layout_extractor import extract_layout
from .marks import DetectionResult
from .preprocess import preprocess as preprocess_image
from .scorer import CorrectionResult, apply_manual_edit, finalize_with_essay_scores, pending_essays, score
from .visualize_core import draw_feedback, overlay_layout

logger = logging.getLogger(__name__)

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="omr-autocorrect: extract layouts, detect marks, score and review bubble-sheet answers.",
)


def _fail(what: str, e: Exception) -> NoReturn:
    rprint(f"[red]{what}:[/red] {e}")
    raise typer.Exit(code=2)


def _emit(doc: Any, out: Optional[str]) -> None:
    """Write to `out` (JSON, or YAML by extension) or print JSON on stdout."""
    if out:
        dump_any(doc, out)
        rprint(f"[green]Wrote:[/green] {out}")
    else:
        typer.echo(json.dumps(doc, indent=2, ensure_ascii=False))


def _defaults(config: Optional[str], **overrides: Any) -> DetectionDefaults:
    base = load_defaults(config) if config else DEFAULTS
    defaults = apply_overrides(base, **overrides)
    logger.debug("detection settings: %s", defaults.to_dict())
    return defaults


def _parse_essay(spec: str) -> Dict[str, Any]:
    # "Q2=3" or "Q2=3:well argued"
    qid, sep, rest = spec.partition("=")
    if not sep or not qid.strip():
        raise ValueError(f"essay score must look like Q2=3[:feedback], got {spec!r}")
    value, _, feedback = rest.partition(":")
    return {qid.strip(): {"score": float(value), "feedback": feedback.strip()}}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging (per corner / per question)"),
):
    """
    Global options.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
        force=True,
    )


# -------------------------- EXTRACT-LAYOUT ---------------------------
@app.command("extract-layout")
def extract_layout_cmd(
    template_html: str = typer.Argument(..., help="Generated sheet template (HTML)"),
    out: str = typer.Option("layout.json", "--out", "-o", help="Output layout (.json or .yaml)"),
    key_out: Optional[str] = typer.Option(None, "--key-out", help="Also write the answer key implied by black-filled bubbles"),
    points: float = typer.Option(1.0, "--points", help="Points per question for --key-out"),
):
    """
    Build a layout document from the HTML sheet template.
    """
    try:
        layout = extract_layout(Path(template_html).read_text(encoding="utf-8"))
    except (OMRError, OSError) as e:
        _fail(f"Layout extraction failed for {template_html}", e)

    save_layout(layout, out)
    rprint(f"[green]Wrote layout:[/green] {out} "
           f"({len(layout.field_blocks)} questions, {len(layout.anchors)} anchors)")
    if key_out:
        dump_any(answer_key_from_layout(layout, points=points), key_out)
        rprint(f"[green]Wrote key:[/green] {key_out}")


# ---------------------------- PREPROCESS -----------------------------
@app.command()
def preprocess(
    image: str = typer.Argument(..., help="Captured sheet (image or PDF)"),
    out_image: str = typer.Option("preprocessed.png", "--out-image", "-o", help="Output PNG"),
    max_dimension: int = typer.Option(DEFAULTS.max_dimension, "--max-dimension", help="Cap for the longer side"),
    dpi: int = typer.Option(300, "--dpi", help="Render DPI for PDFs"),
):
    """
    Resize, grayscale, Otsu-binarize and median-filter a capture.
    """
    try:
        img = load_image(image, dpi=dpi)
    except OMRError as e:
        _fail(f"Could not read {image}", e)
    out = preprocess_image(img, max_dimension=max_dimension)
    Path(out_image).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
    cv.imwrite(out_image, out)
    rprint(f"[green]Wrote:[/green] {out_image} ({out.shape[1]}x{out.shape[0]})")


# ------------------------------ ANCHORS ------------------------------
@app.command()
def anchors(
    image: str = typer.Argument(..., help="Captured sheet (image or PDF)"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Detection settings (.yaml/.json)"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Write anchors as JSON/YAML instead of printing"),
    dpi: int = typer.Option(300, "--dpi", help="Render DPI for PDFs"),
):
    """
    Locate the corner anchors of a capture.
    """
    try:
        found = detect_anchors(load_image(image, dpi=dpi), _defaults(config))
    except (OMRError, OSError, ValueError) as e:
        _fail(f"Anchor detection failed for {image}", e)
    _emit([a.to_dict() for a in found], out)


# ------------------------------ DETECT -------------------------------
@app.command("detect")
def detect_cmd(
    image: str = typer.Argument(..., help="Captured sheet (image or PDF)"),
    layout_path: str = typer.Option(..., "--layout", "-l", help="Layout document (.json/.yaml)"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Detection result file"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Detection settings (.yaml/.json)"),
    min_darkness: Optional[float] = typer.Option(None, "--min-darkness", help="Darkness (0-1) at which a bubble counts as marked"),
    use_preprocess: bool = typer.Option(False, "--preprocess/--raw", help="Binarize before detection"),
    require_anchors: bool = typer.Option(False, "--require-anchors", help="Fail instead of degrading when anchors are missing"),
    dpi: int = typer.Option(300, "--dpi", help="Render DPI for PDFs"),
):
    """
    Detect the marked option(s) of every question.
    """
    try:
        layout = load_layout(layout_path)
        defaults = _defaults(config, min_darkness=min_darkness)
        img = load_image(image, dpi=dpi)
        result = grade_image(img, layout, None, defaults, preprocess=use_preprocess,
                             require_anchors=require_anchors).detection
    except (OMRError, OSError, ValueError) as e:
        _fail(f"Detection failed for {image}", e)

    _emit(result.to_dict(), out)
    if result.needs_review():
        rprint(f"[yellow]Low confidence ({result.overall_confidence:.2f}); manual review advised.[/yellow]")


# ------------------------------- SCORE -------------------------------
@app.command("score")
def score_cmd(
    detection_json: str = typer.Argument(..., help="Detection result from 'detect'"),
    key: str = typer.Option(..., "--key", "-k", help="Answer key (.yaml/.json, or .txt with one letter per question)"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Correction result file"),
):
    """
    Score detected answers against an answer key.
    """
    try:
        detection = DetectionResult.from_dict(load_config_any(detection_json))
        result = score(detection, load_answer_key(key))
    except (OMRError, OSError, ValueError) as e:
        _fail("Scoring failed", e)
    _emit(result.to_dict(), out)
    _print_summary(result)


# ------------------------------ FINALIZE -----------------------------
@app.command()
def finalize(
    result_json: str = typer.Argument(..., help="Correction result from 'score'"),
    essay: List[str] = typer.Option([], "--essay", "-e", help="Essay score, e.g. Q2=3 or 'Q2=3:good argument' (repeatable)"),
    essay_file: Optional[str] = typer.Option(None, "--essay-file", help="Essay scores document {Q2: {score, feedback}}"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Updated result file"),
):
    """
    Merge essay scores into a correction result and recompute totals.
    """
    try:
        partial = CorrectionResult.from_dict(load_config_any(result_json))
        scores: Dict[str, Any] = dict(load_config_any(essay_file)) if essay_file else {}
        for spec in essay:
            scores.update(_parse_essay(spec))
        result = finalize_with_essay_scores(partial, scores)
    except (OMRError, OSError, ValueError) as e:
        _fail("Finalize failed", e)
    _emit(result.to_dict(), out)
    _print_summary(result)


# -------------------------------- EDIT -------------------------------
@app.command()
def edit(
    result_json: str = typer.Argument(..., help="Correction result"),
    question_id: str = typer.Argument(..., help="Question to correct, e.g. Q3"),
    answer: str = typer.Argument(..., help="Answer as read by a human ('' for blank)"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Updated result file"),
):
    """
    Replace one detected answer by a human reading and re-score it.
    """
    try:
        result = apply_manual_edit(CorrectionResult.from_dict(load_config_any(result_json)), question_id, answer)
    except (OMRError, OSError, ValueError) as e:
        _fail("Edit failed", e)
    _emit(result.to_dict(), out)
    _print_summary(result)


# ------------------------------- GRADE -------------------------------
@app.command()
def grade(
    inputs: List[str] = typer.Argument(..., help="Captured sheets (images or PDFs)"),
    layout_path: str = typer.Option(..., "--layout", "-l", help="Layout document (.json/.yaml)"),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Answer key (.yaml/.json/.txt)"),
    out_csv: str = typer.Option("results.csv", "--out-csv", "-o", help="Output CSV, one row per sheet"),
    out_dir: Optional[str] = typer.Option(None, "--out-dir", help="Directory for one JSON result per sheet"),
    out_annotated_dir: Optional[str] = typer.Option(None, "--out-annotated-dir", help="Directory for annotated sheets"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Detection settings (.yaml/.json)"),
    min_darkness: Optional[float] = typer.Option(None, "--min-darkness", help="Darkness (0-1) at which a bubble counts as marked"),
    workers: int = typer.Option(4, "--workers", "-j", help="Sheets graded in parallel"),
    use_preprocess: bool = typer.Option(False, "--preprocess/--raw", help="Binarize before detection"),
    require_anchors: bool = typer.Option(False, "--require-anchors", help="Fail a sheet instead of degrading when anchors are missing"),
    read_qr: bool = typer.Option(False, "--qr/--no-qr", help="Read the sheet QR code (exam/student ids)"),
    dpi: int = typer.Option(300, "--dpi", help="Render DPI for PDFs"),
):
    """
    Grade one or many sheets end to end. Failing sheets are reported, not fatal.
    """
    try:
        layout = load_layout(layout_path)
        answer_key = load_answer_key(key) if key else None
        defaults = _defaults(config, min_darkness=min_darkness)
    except (OMRError, OSError, ValueError) as e:
        _fail("Failed to load inputs", e)

    items = grade_batch(inputs, layout, answer_key, defaults, workers=workers,
                        preprocess=use_preprocess, require_anchors=require_anchors, read_qr=read_qr, dpi=dpi)
    write_results_csv(items, answer_key, out_csv)

    table = Table(title="Grading")
    for col in ("sheet", "score", "%", "confidence", "status"):
        table.add_column(col)
    for it in items:
        if not it.ok:
            table.add_row(it.source, "", "", "", f"[red]{it.error}[/red]")
            continue
        det, corr = it.sheet.detection, it.sheet.correction
        status = "[yellow]review[/yellow]" if det.needs_review() else "[green]ok[/green]"
        table.add_row(
            it.source,
            f"{corr.score:g}/{corr.max_score:g}" if corr else "",
            str(corr.percentage) if corr else "",
            f"{det.overall_confidence:.2f}",
            status,
        )
        stem = Path(it.source).stem
        if out_dir:
            dump_json(it.sheet.to_dict(), str(Path(out_dir) / f"{stem}.json"))
        if out_annotated_dir:
            vis = draw_feedback(load_image(it.source, dpi=dpi), layout, det, corr)
            Path(out_annotated_dir).mkdir(parents=True, exist_ok=True)
            cv.imwrite(str(Path(out_annotated_dir) / f"{stem}_feedback.png"), vis)
    rprint(table)
    rprint(f"[green]Wrote results:[/green] {out_csv}")

    failed = sum(1 for it in items if not it.ok)
    if failed:
        rprint(f"[red]{failed} of {len(items)} sheet(s) failed.[/red]")
        raise typer.Exit(code=2)


# ----------------------------- VISUALIZE -----------------------------
@app.command()
def visualize(
    image: str = typer.Argument(..., help="Captured sheet or template page"),
    layout_path: str = typer.Option(..., "--layout", "-l", help="Layout document (.json/.yaml)"),
    out_image: str = typer.Option("layout_overlay.png", "--out-image", "-o", help="Output overlay PNG"),
    dpi: int = typer.Option(300, "--dpi", help="Render DPI for PDFs"),
):
    """
    Overlay the layout bubbles, essay areas and anchors on a capture to verify placement.
    """
    try:
        overlay_layout(image, layout_path, out_image=out_image, dpi=dpi)
    except (OMRError, OSError, ValueError) as e:
        _fail(f"Visualization failed for {layout_path}", e)
    rprint(f"[green]Wrote:[/green] {out_image}")


# ------------------------------- ALIGN -------------------------------
@app.command()
def align(
    image: str = typer.Argument(..., help="Captured sheet (image or PDF)"),
    layout_path: str = typer.Option(..., "--layout", "-l", help="Layout document (.json/.yaml)"),
    out_image: str = typer.Option("aligned.png", "--out-image", "-o", help="Output PNG on the layout canvas"),
    scale: float = typer.Option(2.0, "--scale", help="Canvas pixels per layout unit"),
    require_anchors: bool = typer.Option(False, "--require-anchors", help="Fail instead of degrading when anchors are missing"),
    dpi: int = typer.Option(300, "--dpi", help="Render DPI for PDFs"),
):
    """
    Resample a capture onto the idealized page using the detected anchors.
    """
    try:
        layout = load_layout(layout_path)
        img = load_image(image, dpi=dpi)
        reg = register(detect_anchors(img), layout, img.shape, require_anchors=require_anchors)
    except (OMRError, OSError, ValueError) as e:
        _fail(f"Alignment failed for {image}", e)
    logger.debug("registration: %s", reg.to_dict())
    aligned = warp_to_layout(img, reg, layout, scale=scale)
    Path(out_image).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
    cv.imwrite(out_image, aligned)
    rprint(f"[green]Wrote:[/green] {out_image} ({reg.method}, {reg.anchor_count} anchors)")


def _print_summary(result: CorrectionResult) -> None:
    rprint(f"[bold]Score:[/bold] {result.score:g}/{result.max_score:g} ({result.percentage}%)")
    pending = pending_essays(result)
    if pending:
        rprint(f"[yellow]Essays awaiting a score:[/yellow] {', '.join(pending)}")


# ------------------------------- MAIN --------------------------------
def app_main() -> None:
    """Entry point for console_scripts."""
    try:
        app()
    except KeyboardInterrupt:
        rprint("\n[red]Interrupted[/red]")
        sys.exit(130)


if __name__ == "__main__":
    app_main()
