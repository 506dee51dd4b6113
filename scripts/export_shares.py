"""Export recently shared YouTube links for playlist tooling.

Writes ``{"results": [{"youtube_url": ..., "title": ...}, ...]}``.

Usage:
    python scripts/export_shares.py --days 7 --output scripts/songs.json
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import songshare_app  # noqa: E402


def export_recent(path: Path, days: int = 7) -> int:
    db = songshare_app.SessionLocal()
    try:
        results = songshare_app.recent_videos(db, days=days)
    finally:
        db.close()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump({"results": results}, f, indent=2, ensure_ascii=False)
    return len(results)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Export recent shares that have a YouTube link")
    parser.add_argument("--days", type=int, default=7)
    parser.add_argument("--output", type=Path, default=Path("scripts/songs.json"))
    args = parser.parse_args(argv)
    count = export_recent(args.output, days=args.days)
    print(f"Wrote {count} songs to {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
