"""Экспорт стикера из JSON-файла с данными заведения.

    python export_sticker.py business.json --format png --language ar
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from main import setup_logging


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export a printable business sticker")
    parser.add_argument("business_json", type=Path, help="JSON с данными заведения (формат прокси Google Places)")
    parser.add_argument("--format", choices=("png", "pdf", "print"), default="png")
    parser.add_argument("--language", choices=("en", "ar"), default="en")
    parser.add_argument("--output-dir", type=Path, default=None)
    parser.add_argument("--payments", type=Path, default=None, help="JSON-список способов оплаты")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    from core.browser_pool import BrowserPool
    from core.config import EXPORT_PATH
    from core.models import BusinessData, PaymentMethod
    from core.sticker_exporter import StickerExporter
    from core.sticker_service import StickerService, sticker_filename

    business = BusinessData.from_dict(json.loads(args.business_json.read_text(encoding="utf-8")))
    payment_methods = None
    if args.payments:
        payment_methods = [PaymentMethod.from_dict(p) for p in json.loads(args.payments.read_text(encoding="utf-8"))]

    pool = BrowserPool()
    exporter = StickerExporter(pool)
    output_dir = args.output_dir or EXPORT_PATH
    service = StickerService(pool, exporter, output_dir=output_dir)
    try:
        if args.format == "png":
            outcome = await service.download_png(business, args.language, payment_methods=payment_methods)
        elif args.format == "pdf":
            outcome = await service.download_pdf(business, args.language, payment_methods=payment_methods)
        else:
            outcome = await service.print_sticker(business, args.language, payment_methods=payment_methods)
            if outcome.print_job is not None:
                output_dir.mkdir(parents=True, exist_ok=True)
                html_path = output_dir / sticker_filename(business.name, "print.html")
                html_path.write_text(outcome.print_job.html, encoding="utf-8")
                logging.info(f"Страница печати сохранена: {html_path}")
    finally:
        await exporter.proxy_client.close()
        await pool.shutdown()

    for notice in outcome.notices:
        print(f"[{notice.level}] {notice.text}")
    if outcome.path:
        print(outcome.path)
    return 0 if outcome.success else 1


def main(argv=None) -> int:
    setup_logging()
    load_dotenv()
    return asyncio.run(run(parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
