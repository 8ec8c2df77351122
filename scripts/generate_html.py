import argparse
import sys
from pathlib import Path
from typing import List, Optional

# ╔═══════════════════════════════════════════════════════════════════════╗
# ║  Re-render an Archivecord export                                      ║
# ║                                                                       ║
# ║  Usage:                                                               ║
# ║    python scripts/generate_html.py <export_dir> [--per-page N]        ║
# ║                                   [--title "Title"]                   ║
# ║                                                                       ║
# ║  The script will:                                                     ║
# ║    - Read <export_dir>/processed_messages/*.json                      ║
# ║    - Rebuild <export_dir>/processed_html/ (pages, index, static)      ║
# ║    - Leave raw batches and downloaded files untouched                 ║
# ╚═══════════════════════════════════════════════════════════════════════╝

CODE_DIR = Path(__file__).resolve().parents[1] / "code"
if str(CODE_DIR) not in sys.path:
    sys.path.insert(0, str(CODE_DIR))

from common.config import Config  # noqa: E402
from common.constants import HTML_DIRNAME, PROCESSED_DIRNAME  # noqa: E402
from common.logging_setup import configure_app_logging  # noqa: E402
from exporter.renderer import HtmlRenderer, RenderResult  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Rebuild processed_html/ for an existing export directory."
    )
    p.add_argument("export_dir", type=Path, help="export directory to re-render")
    p.add_argument(
        "--per-page",
        type=int,
        default=None,
        help="messages per HTML page (default: MESSAGES_PER_PAGE or 500)",
    )
    p.add_argument("--title", default=None, help="page title (default: folder name)")
    return p


def regenerate(
    export_dir: Path, per_page: int, title: Optional[str] = None
) -> RenderResult:
    processed = export_dir / PROCESSED_DIRNAME
    if not processed.is_dir():
        raise FileNotFoundError(f"No {PROCESSED_DIRNAME}/ directory in {export_dir}")
    renderer = HtmlRenderer(per_page)
    return renderer.render_export(
        processed, export_dir / HTML_DIRNAME, title=title or export_dir.name
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = Config()
    log = configure_app_logging(cfg.LOG_LEVEL, cfg.LOG_FORMAT, cfg.LOG_FILE)

    export_dir = args.export_dir.resolve()
    per_page = args.per_page if args.per_page and args.per_page > 0 else cfg.MESSAGES_PER_PAGE
    try:
        result = regenerate(export_dir, per_page, args.title)
    except FileNotFoundError as e:
        log.error("%s", e)
        return 1
    except OSError as e:
        log.error("Failed to write HTML for %s: %s", export_dir, e)
        return 1

    log.info(
        "Rendered %d messages into %d page(s) under %s",
        result.messages,
        result.pages,
        export_dir / HTML_DIRNAME,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
