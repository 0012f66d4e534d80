#!/usr/bin/env python3
"""
merge_splits.py  ─  command line front end for apk_merger

  merge_splits.py <splits_dir> <output.apk> [options]
  merge_splits.py --check-tools

Settings come from the environment (a .env next to this script or in the
current directory is loaded first); flags override them:

  APKMERGE_WORK_ROOT       parent dir for per-request workspaces
  APKMERGE_TOOLS_DIR       where a downloaded apktool.jar is kept
  APKTOOL / ZIPALIGN       explicit tool paths
  APKTOOL_JAR_URL          apktool.jar download location
  APKMERGE_TOOL_TIMEOUT    seconds per tool call
  APKMERGE_PARALLEL_UNPACK 1/true to decode splits concurrently
"""

import os
import sys
import argparse
import logging
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from apk_merger import MergeSettings, merge_apks
from merge_errors import InvalidInput, MergeError
from tool_resolver import check_tools

log = logging.getLogger("merge_splits")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BAD_INPUT = 2


def load_config() -> MergeSettings:
    load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))
    load_dotenv()
    return MergeSettings.from_env()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description='Merge base.apk + split_config.*.apk into one installable APK')
    p.add_argument('input_dir', nargs='?', type=Path, help='directory holding the split APKs')
    p.add_argument('output', nargs='?', type=Path, help='where to write the merged APK')
    p.add_argument('--check-tools', action='store_true', help='report apktool/zipalign and exit')
    p.add_argument('--work-root', type=Path, help='parent dir for the temporary workspace')
    p.add_argument('--tools-dir', type=Path, help='cache dir for a downloaded apktool.jar')
    p.add_argument('--apktool', help='apktool executable or apktool.jar')
    p.add_argument('--zipalign', help='zipalign executable')
    p.add_argument('--timeout', type=float, help='seconds allowed per tool invocation')
    p.add_argument('--parallel', action='store_true', help='unpack splits concurrently')
    p.add_argument('--keep-signatures', action='store_true',
                   help='leave original/META-INF signature files in place')
    p.add_argument('--request-id', help='tag for progress lines')
    p.add_argument('-v', '--verbose', action='store_true')
    return p


def apply_args(settings: MergeSettings, args: argparse.Namespace) -> MergeSettings:
    if args.work_root:
        settings.work_root = args.work_root
    if args.tools_dir:
        settings.tools_dir = args.tools_dir
    if args.apktool:
        settings.apktool = args.apktool
    if args.zipalign:
        settings.zipalign = args.zipalign
    if args.timeout is not None:
        settings.tool_timeout = args.timeout
    if args.parallel:
        settings.parallel_unpack = True
    if args.keep_signatures:
        settings.strip_signatures = False
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=logging.DEBUG if args.verbose else logging.INFO
    )

    try:
        settings = apply_args(load_config(), args)
    except InvalidInput as exc:
        log.error("%s", exc)
        return EXIT_BAD_INPUT

    if args.check_tools:
        report = check_tools(settings.resolver())
        for tool, cmd in report.items():
            print(f"  {tool:<10} {cmd or 'NOT FOUND'}")
        return EXIT_OK if all(report.values()) else EXIT_FAILED

    if args.input_dir is None or args.output is None:
        parser.print_usage(sys.stderr)
        return EXIT_BAD_INPUT

    try:
        result = merge_apks(args.input_dir, args.output, settings, request_id=args.request_id)
    except MergeError as exc:
        log.error("%s", exc)
        if exc.output:
            print(exc.output.rstrip(), file=sys.stderr)
        return EXIT_BAD_INPUT if isinstance(exc, InvalidInput) else EXIT_FAILED

    print(result)
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
