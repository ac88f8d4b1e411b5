#!/usr/bin/env python3
"""Fail when likely mojibake/corrupted Chinese text is detected."""

from pathlib import Path
import re
import sys

ROOT = Path(__file__).resolve().parents[1]
INCLUDE_EXT = {".py", ".md", ".txt", ".json", ".toml"}
EXCLUDE_DIRS = {".git", "node_modules", "__pycache__", ".venv", ".pytest_cache"}
SELF_PATH = Path(__file__).resolve()

SUSPICIOUS_PATTERNS = [
    re.compile(r"\?{4,}"),
    re.compile("�"),
    # GBK bytes decoded as UTF-8 replacement runs ("锟斤拷") and UTF-8 read as GBK.
    re.compile("锟斤拷|烫烫烫|屯屯屯"),
    # UTF-8 Chinese read as Latin-1 / cp1252.
    re.compile(r"[ä-é][\u0080-¿‘-›]{2}"),
]

DEFAULT_TARGETS = ("backend", "scripts")


def should_scan(path: Path) -> bool:
    if path.resolve() == SELF_PATH:
        return False
    if path.suffix.lower() not in INCLUDE_EXT:
        return False
    if any(part in EXCLUDE_DIRS for part in path.parts):
        return False
    return path.is_file()


def collect_targets(argv: list[str]) -> list[Path]:
    if argv:
        return [Path(arg).resolve() for arg in argv]
    return [ROOT / name for name in DEFAULT_TARGETS]


def scan_lines(lines: list[str]) -> list[tuple[int, str]]:
    hits = []
    for idx, line in enumerate(lines, start=1):
        if any(pattern.search(line) for pattern in SUSPICIOUS_PATTERNS):
            hits.append((idx, line.strip()))
    return hits


def main() -> int:
    failed = []
    for target in collect_targets(sys.argv[1:]):
        if target.is_dir():
            paths = [p for p in target.rglob("*") if should_scan(p)]
        else:
            paths = [target] if should_scan(target) else []

        for path in paths:
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except UnicodeDecodeError:
                failed.append((path, 0, "non-utf8 file"))
                continue
            failed.extend((path, line_no, line) for line_no, line in scan_lines(lines))

    if failed:
        print("Detected suspicious mojibake/corrupted Chinese text:")
        for path, line_no, line in failed:
            rel = path.relative_to(ROOT) if path.is_absolute() and str(path).startswith(str(ROOT)) else path
            print(f"- {rel}:{line_no}: {line}")
        return 1

    print("No suspicious mojibake/corrupted Chinese text detected.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
