import argparse
import asyncio
import logging
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from apps.common.pipeline_loader import build_extraction_client, build_store, new_session
from apps.common.settings import AppSettings, load_settings
from services.capture.sources import CameraSession, CameraUnavailable, read_picked_file
from services.export.xlsx_encoder import ExportWriteFailed, write_export
from services.ingestion.normalizer import UnsupportedImageFormat
from services.pipeline import CaptureOutcome
from services.records.domain import IMAGE_SLOTS
from services.records.store import search_records

console = Console()


def _print_outcome(outcome: CaptureOutcome) -> int:
    p = outcome.payload
    console.print(f"[bold]{outcome.slot}[/bold]: {p.width}x{p.height} {p.mime_type}, {len(p.data)} bytes")
    if outcome.error is not None:
        console.print(f"[red]Extraction failed: {outcome.error}[/red]")
        return 1

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Field")
    table.add_column("Value")
    table.add_column("Merged")
    for k, v in outcome.extracted.items():
        table.add_row(k, v or "[dim]-[/dim]", "yes" if k in outcome.written else "")
    console.print(table)
    return 0


def cmd_extract(args: argparse.Namespace, settings: AppSettings) -> int:
    raw = read_picked_file(args.image)
    if raw is None:
        console.print(f"[yellow]Not an image file: {args.image}[/yellow]")
        return 2
    session = new_session(settings, build_extraction_client(settings))
    try:
        outcome = asyncio.run(session.capture(args.slot, raw))
    except UnsupportedImageFormat as e:
        console.print(f"[red]{e}[/red]")
        return 2
    return _print_outcome(outcome)


def cmd_camera(args: argparse.Namespace, settings: AppSettings) -> int:
    session = new_session(settings, build_extraction_client(settings))
    try:
        outcome = asyncio.run(session.capture_camera(args.slot, lambda: CameraSession(args.device)))
    except CameraUnavailable as e:
        console.print(f"[red]{e}[/red]")
        return 1
    return _print_outcome(outcome)


def cmd_list(args: argparse.Namespace, settings: AppSettings) -> int:
    records = search_records(build_store(settings).list(), args.query or "")
    table = Table(show_header=True, header_style="bold magenta")
    for col in ("NO", "Status", "OC Serial", "Model P/N", "Defect", "Customer", "Date", "Images"):
        table.add_column(col)
    for r in records:
        n_images = sum(1 for v in r.images.values() if v)
        table.add_row(
            r.id,
            r.status.value,
            r.get("oc_serial_number"),
            r.get("model_pn"),
            r.get("defect_description"),
            r.get("customer"),
            r.get("date"),
            str(n_images),
        )
    console.print(table)
    console.print(f"{len(records)} record(s)")
    return 0


def cmd_export(args: argparse.Namespace, settings: AppSettings) -> int:
    records = build_store(settings).list()
    try:
        out = write_export(records, args.out_dir or settings.export_dir)
    except ExportWriteFailed as e:
        console.print(f"[red]{e}[/red]")
        return 1
    console.print(f"[green]Exported {len(records)} record(s) -> {out}[/green]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="rma", description="RMA capture, extraction and export from the terminal.")
    ap.add_argument("--config", default=None, help="Path to app.yaml (defaults to RMA_CONFIG_PATH or config/app.yaml).")
    ap.add_argument("-v", "--verbose", action="store_true")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("extract", help="Normalize an image file and run the slot's extraction.")
    p.add_argument("slot", choices=IMAGE_SLOTS)
    p.add_argument("image")
    p.set_defaults(func=cmd_extract)

    p = sub.add_parser("camera", help="Snapshot from a local camera and run the slot's extraction.")
    p.add_argument("slot", choices=IMAGE_SLOTS)
    p.add_argument("--device", type=int, default=0)
    p.set_defaults(func=cmd_camera)

    p = sub.add_parser("list", help="Print stored records.")
    p.add_argument("--query", default=None, help="Filter by NO, OC serial, customer or model P/N.")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("export", help="Write all records to an .xlsx workbook.")
    p.add_argument("--out-dir", default=None)
    p.set_defaults(func=cmd_export)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    logging.basicConfig(
        level="DEBUG" if args.verbose else settings.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    return args.func(args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
