# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""CleanCapture CLI: capture and serve commands.

Usage:
    cleancapture capture URL [-o FILE] [--width W] [--height H] [--full-page] [--json]
    cleancapture serve [server options]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from . import CaptureResult
from .browser_manager import BrowserConfig, BrowserManager
from .capture import DEFAULT_HEIGHT, DEFAULT_WIDTH, CaptureConfig, CaptureController

DEFAULT_OUTPUT = "screenshot.jpg"


def _validate_output_path(path_str: str) -> Path:
    """Return the output file path, creating its parent directory if needed."""
    p = Path(path_str)
    if not p.parent.exists():
        p.parent.mkdir(parents=True, exist_ok=True)
    return p


async def _capture_once(
    url: str,
    *,
    width: int,
    height: int,
    full_page: bool,
    timeout_ms: int | None,
    allow_local: bool,
) -> CaptureResult:
    """One-shot capture with a private browser, shut down before returning."""
    manager = BrowserManager(BrowserConfig())
    controller = CaptureController(manager, CaptureConfig(allow_local=allow_local))
    try:
        return await controller.capture(
            url,
            width=width,
            height=height,
            full_page=full_page,
            timeout_ms=timeout_ms,
        )
    finally:
        await manager.shutdown()


def cmd_capture(args: argparse.Namespace) -> None:
    """Capture one URL to a JPEG file (or a JSON envelope on stdout)."""
    result = asyncio.run(
        _capture_once(
            args.url,
            width=args.width,
            height=args.height,
            full_page=args.full_page,
            timeout_ms=args.timeout_ms,
            allow_local=args.allow_local,
        )
    )

    if not result.success:
        from .problem_details import from_result

        if args.json:
            print(json.dumps(from_result(result).to_dict(), ensure_ascii=False))
        else:
            print(from_result(result).to_cli_text(), file=sys.stderr)
        sys.exit(1)

    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)

    if args.json:
        envelope = {
            "success": True,
            "url": result.url,
            "screenshot": result.base64,
            "contentType": result.content_type,
            "suppressionApplied": result.suppression_applied,
        }
        if result.suppression is not None:
            envelope["hidden"] = result.suppression.hidden
            envelope["closed"] = result.suppression.closed
        print(json.dumps(envelope, ensure_ascii=False))
        return

    output = _validate_output_path(args.output)
    output.write_bytes(result.data)
    print(f"Saved {len(result.data):,} bytes to {output}")


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the server, forwarding any extra args to it."""
    from .server import main

    main(argv=getattr(args, "_server_argv", []))


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="CleanCapture CLI",
        prog="cleancapture",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    _capture_epilog = """\
examples:
  %(prog)s https://example.com                       Save screenshot.jpg
  %(prog)s https://example.com -o shots/home.jpg     Save to a specific file
  %(prog)s https://example.com --full-page --json    Base64 JSON envelope to stdout
"""
    p_capture = subparsers.add_parser(
        "capture",
        help="Capture an overlay-free screenshot of a URL",
        epilog=_capture_epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p_capture.add_argument("url", metavar="URL", help="Target URL (http:// or https://)")
    p_capture.add_argument("-o", "--output", default=DEFAULT_OUTPUT, metavar="FILE", help="Output JPEG path")
    p_capture.add_argument("--width", type=int, default=DEFAULT_WIDTH, help=f"Viewport width (default: {DEFAULT_WIDTH})")
    p_capture.add_argument(
        "--height", type=int, default=DEFAULT_HEIGHT, help=f"Viewport height (default: {DEFAULT_HEIGHT})"
    )
    p_capture.add_argument("--full-page", action="store_true", help="Capture the full scrollable page")
    p_capture.add_argument("--timeout-ms", type=int, default=None, help="Navigation timeout in ms (default: 30000)")
    p_capture.add_argument("--allow-local", action="store_true", help="Allow localhost and private IP targets")
    p_capture.add_argument("--json", action="store_true", help="Print a JSON envelope with base64 image to stdout")

    subparsers.add_parser(
        "serve",
        help="Start the screenshot server (extra args forwarded to server)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  %(prog)s                                Start HTTP server on 127.0.0.1:3000
  %(prog)s --port 8080 --host 0.0.0.0     Listen on all interfaces
  %(prog)s --transport stdio              Run as an MCP stdio server""",
        add_help=False,
    )

    commands = {"capture": cmd_capture, "serve": cmd_serve}

    args, remaining = parser.parse_known_args(argv)

    # Forward remaining args to server when using 'serve' command
    if args.command == "serve":
        args._server_argv = remaining
    elif remaining:
        parser.error(f"unrecognized arguments: {' '.join(remaining)}")

    if args.command != "serve":
        from .logging_config import configure as configure_logging

        configure_logging(json_output=False, level="DEBUG" if args.verbose else "WARNING")

    try:
        commands[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    except SystemExit:
        raise
    except Exception as e:
        from .problem_details import from_exception

        problem = from_exception(e)
        print(problem.to_cli_text(), file=sys.stderr)
        if args.verbose:
            import traceback

            traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
