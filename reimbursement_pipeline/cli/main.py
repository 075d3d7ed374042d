#!/usr/bin/env python3
"""
Main CLI entrypoint for the reimbursement OCR pipeline.
"""

import argparse
import asyncio
import datetime as dt
import os
import sys
from pathlib import Path
from typing import List

from reimbursement_pipeline.core.utils import (IMAGE_EXTS, PDF_EXTS, MAX_CONCURRENT_OCR,
                                               HISTORY_RETENTION_DAYS, money_fmt)
from reimbursement_pipeline.core.models import UploadedFile, QueueStatus
from reimbursement_pipeline.core.ocr import OCRClient
from reimbursement_pipeline.core.processor import InvoiceProcessor
from reimbursement_pipeline.core.database import (HistoryStore, auto_cleanup, get_history_records,
                                                  save_current_draft)
from reimbursement_pipeline.core.ledger import Ledger
from reimbursement_pipeline.core.reporting import write_csv, write_xlsx, build_ledger_pdf


def discover_files(incoming_dir: Path) -> List[Path]:
    """Invoice images and PDFs in the incoming directory, by name."""
    return sorted(
        p for p in incoming_dir.iterdir()
        if p.is_file() and p.suffix.lower() in IMAGE_EXTS.union(PDF_EXTS)
    )


def print_history(db_path: Path) -> int:
    records = get_history_records(db_path)
    if not records:
        print("[INFO] No history records")
        return 0
    for r in records:
        when = dt.datetime.fromtimestamp(r["timestamp"] / 1000).isoformat(timespec="seconds")
        print(f"  #{r['id']:<4} {when}  {r['count']:>3} item(s)  {money_fmt(r['total']):>12}  {r['title']}")
    return 0


def main():
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        description="Recognize invoice images/PDFs into a reimbursement ledger and export it",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Process ./incoming with the OCR endpoint from OCR_ENDPOINT
  reimburse-ocr

  # Explicit endpoint and form header
  reimburse-ocr --endpoint https://example.com/api/ocr --reimburser Alice --project Q3-Trip

  # Show archived reimbursements
  reimburse-ocr --list-history
        """
    )
    parser.add_argument("--incoming", default="./incoming",
                        help="Folder with invoice images/PDFs (default: ./incoming)")
    parser.add_argument("--output", default="./output",
                        help="Folder for exports and the history database (default: ./output)")
    parser.add_argument("--endpoint",
                        help="OCR endpoint URL (default: OCR_ENDPOINT env var)")
    parser.add_argument("--api-key",
                        help="Bearer token for the OCR endpoint (default: OCR_API_KEY env var)")
    parser.add_argument("--reimburser", default="",
                        help="Name of the person being reimbursed")
    parser.add_argument("--project", default="",
                        help="Project the expenses belong to")
    parser.add_argument("--concurrency", type=int, default=MAX_CONCURRENT_OCR,
                        help=f"Concurrent OCR calls (default: {MAX_CONCURRENT_OCR})")
    parser.add_argument("--no-cache", action="store_true",
                        help="Always call OCR, even for invoices found in the history")
    parser.add_argument("--list-history", action="store_true",
                        help="List archived reimbursements and exit")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Show detailed processing information for debugging")

    args = parser.parse_args()

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)
    store = HistoryStore(output_dir / "reimbursements.db")

    if args.list_history:
        return print_history(store.db_path)

    removed = auto_cleanup(store.db_path, days=HISTORY_RETENTION_DAYS)
    if removed:
        print(f"[INFO] Removed {removed} history record(s) older than {HISTORY_RETENTION_DAYS} days")

    try:
        ocr_client = OCRClient.from_env(args.endpoint, args.api_key)
    except ValueError as e:
        print(f"[ERROR] {e}")
        return 1
    if not args.endpoint and os.getenv("OCR_ENDPOINT"):
        print(f"[INFO] OCR endpoint: {ocr_client.endpoint} [from OCR_ENDPOINT env]")

    incoming_dir = Path(args.incoming)
    if not incoming_dir.exists():
        incoming_dir.mkdir(parents=True, exist_ok=True)
        print(f"[INFO] Created {incoming_dir}. Add invoices and run again.")
        return 0

    files = discover_files(incoming_dir)
    if not files:
        print("No invoice files found in incoming directory.")
        return 0

    info = {
        "reimburser": args.reimburser,
        "project": args.project,
        "reimbursement_date": dt.date.today().isoformat(),
    }

    def on_progress(index, status, progress, result):
        label = files[index].name
        if status == QueueStatus.PROCESSING:
            print(f"[INFO] Processing {label}")
        elif status == QueueStatus.COMPLETED:
            cached = " [cached]" if result is not None and result.is_cached else ""
            print(f"[OK] {label}: {result.amount}{cached}")
        elif status == QueueStatus.FAILED:
            print(f"[WARN] {label}: recognition failed, placeholder row added")
        elif status == QueueStatus.CANCELLED:
            print(f"[WARN] {label}: cancelled")

    processor = InvoiceProcessor(
        ocr_client,
        store=None if args.no_cache else store,
        concurrency=args.concurrency,
        verbose=args.verbose,
    )
    try:
        results = asyncio.run(processor.process_batch(
            [UploadedFile.from_path(p) for p in files], info, on_progress))
    finally:
        processor.close()

    ledger = Ledger(info=info)
    ledger.extend(results)
    failed = sum(1 for e in processor.queue if e.status == QueueStatus.FAILED)

    out_csv = output_dir / "reimbursement.csv"
    write_csv(ledger.items, out_csv)
    print(f"[OK] Wrote {out_csv}")

    out_xlsx = output_dir / "reimbursement.xlsx"
    write_xlsx(ledger.items, out_xlsx, info)
    print(f"[OK] Wrote {out_xlsx}")

    out_pdf = output_dir / "reimbursement.pdf"
    build_ledger_pdf(ledger.items, out_pdf, info)
    print(f"[OK] Wrote {out_pdf}")

    save_current_draft(store.db_path, ledger.items, info)
    history_id = store.append(ledger.items, info)
    print(f"[OK] Archived as history record #{history_id}")

    print(f"[OK] {len(ledger)} item(s), total {money_fmt(float(ledger.total_amount()))}"
          f"{f', {failed} need manual correction' if failed else ''}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
