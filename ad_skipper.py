from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

import cv2

from errors import AdMatchError
from grayscale import Region, RgbaFrame
from match_engine import (DEFAULT_DURATION_MS, DEFAULT_STRATEGY, MATCHERS,
                          MatchEngine)
from sites import normalize_host
from template_store import TemplateStore


# -----------------------------
# small helpers
# -----------------------------
def load_frame(path: Path) -> RgbaFrame:
    bgr = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if bgr is None:
        raise FileNotFoundError(f"cannot read image: {path}")
    rgba = cv2.cvtColor(bgr, cv2.COLOR_BGR2RGBA)
    h, w = rgba.shape[:2]
    return RgbaFrame(rgba.tobytes(), w, h)


def positive_int(text: str) -> int:
    value = int(text)
    if value <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer: {text}")
    return value


def region_arg(text: str) -> Region:
    try:
        return Region.parse(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc))


# -----------------------------
# subcommands
# -----------------------------
def cmd_mark(engine: MatchEngine, args) -> int:
    host = normalize_host(args.host)
    frame = load_frame(args.image)
    template_id = engine.mark_ad(frame, host, args.duration, region=args.region)
    print(f"Marked: id={template_id} host={host} duration={args.duration}ms")
    return 0


def cmd_check(engine: MatchEngine, args) -> int:
    host = normalize_host(args.host)
    templates = engine.store.query_by_host(host)
    print(f"Host  : {host} ({len(templates)} templates, strategy={engine.strategy}, "
          f"threshold={engine.threshold})")
    found = 0
    for path in args.images:
        result = engine.match(load_frame(path), host, templates)
        if result.matched:
            found += 1
            print(f"{path}: ad id={result.template_id} score={result.score:.4f} "
                  f"skip={result.duration}ms")
        else:
            print(f"{path}: no ad")
    return 0 if found else 1


def cmd_set_duration(engine: MatchEngine, args) -> int:
    engine.set_duration(args.id, args.duration)
    print(f"Updated: id={args.id} duration={args.duration}ms")
    return 0


def cmd_clean(engine: MatchEngine, args) -> int:
    host = normalize_host(args.host)
    count = engine.clean_ads(host)
    print(f"Deleted {count} templates for {host}")
    return 0


def cmd_list(engine: MatchEngine, args) -> int:
    if args.host:
        host = normalize_host(args.host)
        for t in engine.store.query_by_host(host):
            region = f"{t.region.x},{t.region.y},{t.region.w},{t.region.h}" if t.region else "full"
            print(f"{t.id}\t{t.width}x{t.height}\tregion={region}\tduration={t.duration}ms")
    else:
        for host, count in engine.store.hosts():
            print(f"{host}\t{count}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ad-skipper",
                                     description="サイトごとの広告テンプレート登録と検出")
    parser.add_argument("--db", default="ads.db", help="テンプレートDB (SQLite). 規定値 ads.db")
    parser.add_argument("--strategy", choices=sorted(MATCHERS), default=DEFAULT_STRATEGY,
                        help="照合方式。phash (平均ハッシュ) または ncc (正規化相互相関)。規定値 phash")
    parser.add_argument("--threshold", type=float, default=None,
                        help="一致と判定するスコア閾値（これを超えると一致）。規定値 phash=0.95, ncc=0.8")
    parser.add_argument("-v", "--verbose", action="store_true", help="詳細ログを表示")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("mark", help="画像を広告テンプレートとして登録")
    p.add_argument("image", type=Path)
    p.add_argument("--host", required=True, help="ページURLまたはホスト名")
    p.add_argument("--duration", type=positive_int, default=DEFAULT_DURATION_MS,
                   help=f"スキップ時間（ミリ秒）。規定値 {DEFAULT_DURATION_MS}")
    p.add_argument("--region", type=region_arg, default=None,
                   help="テンプレート領域 x,y,w,h（省略時: フレーム全体）")
    p.set_defaults(func=cmd_mark)

    p = sub.add_parser("check", help="画像に登録済み広告が含まれるか判定")
    p.add_argument("images", type=Path, nargs="+")
    p.add_argument("--host", required=True, help="ページURLまたはホスト名")
    p.set_defaults(func=cmd_check)

    p = sub.add_parser("set-duration", help="テンプレートのスキップ時間を変更")
    p.add_argument("id", type=int)
    p.add_argument("duration", type=positive_int)
    p.set_defaults(func=cmd_set_duration)

    p = sub.add_parser("clean", help="ホストの全テンプレートを削除")
    p.add_argument("--host", required=True, help="ページURLまたはホスト名")
    p.set_defaults(func=cmd_clean)

    p = sub.add_parser("list", help="登録済みテンプレートを表示")
    p.add_argument("--host", default="", help="省略時はホストごとの件数を表示")
    p.set_defaults(func=cmd_list)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s [%(levelname).1s] %(name)s: %(message)s")
    try:
        with TemplateStore(args.db) as store:
            engine = MatchEngine(store, strategy=args.strategy, threshold=args.threshold)
            return args.func(engine, args)
    except (AdMatchError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
