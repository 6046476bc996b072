from __future__ import annotations

import argparse
import base64
import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from urllib import error as urllib_error
from urllib import request

from astrovision.config import Settings
from astrovision.data_sources import get_reference_provider
from astrovision.errors import AstroVisionError


DEFAULT_BASE_URL = os.environ.get("ASTRO_API_URL", "http://127.0.0.1:8000/v1")


@dataclass
class PreparedRequest:
    method: str
    url: str
    body: Optional[bytes]
    description: str
    file_path: Optional[Path] = None


@dataclass
class SimpleResponse:
    status: int
    headers: Dict[str, str]
    content: bytes

    def json(self) -> Dict[str, object]:
        return json.loads(self.content.decode("utf-8"))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="astrovision",
        description="Plate-solve a sky photo and compare it with survey imagery",
    )
    parser.add_argument(
        "--base-url",
        default=DEFAULT_BASE_URL,
        help=f"API base URL (default: {DEFAULT_BASE_URL})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(os.environ.get("ASTRO_API_TIMEOUT", "120")),
        help="Request timeout in seconds (default: 120, covers the solver polling budget)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the request that would be sent and exit",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze", help="Run the discovery pipeline on an image")
    analyze.add_argument("--file", required=True, type=Path, help="Path to the sky photograph")
    analyze.add_argument(
        "--local",
        action="store_true",
        help="Run the pipeline in-process (needs ASTROMETRY_API_KEY) instead of calling the API",
    )

    reference = sub.add_parser("reference", help="Fetch the survey image for a sky position")
    reference.add_argument("--ra", required=True, type=float, help="Right ascension (deg)")
    reference.add_argument("--dec", required=True, type=float, help="Declination (deg)")
    reference.add_argument("--service", default=None, help="Survey service: skyview|sdss")
    reference.add_argument("--size-deg", type=float, default=None, help="Field size in degrees")
    reference.add_argument("--output", type=Path, help="Destination file (default: reference_<ra>_<dec>.jpg)")

    return parser


def _prepare_analyze(args: argparse.Namespace) -> PreparedRequest:
    url = f"{args.base_url.rstrip('/')}/analyze-discovery"
    body: Optional[bytes] = None
    if not args.dry_run:
        payload = {"imageBase64": base64.b64encode(args.file.read_bytes()).decode("ascii")}
        body = json.dumps(payload).encode("utf-8")
    return PreparedRequest("POST", url, body, "Analyze discovery", file_path=args.file)


def _print_dry_run(prep: PreparedRequest) -> None:
    print(f"{prep.method} {prep.url}")
    if prep.file_path is not None:
        print(f"File: {prep.file_path}")
    print(f"Action: {prep.description}")


def _send_request(prep: PreparedRequest, timeout: float) -> SimpleResponse:
    req = request.Request(prep.url, data=prep.body, method=prep.method)
    if prep.body is not None:
        req.add_header("Content-Type", "application/json")
        req.add_header("Content-Length", str(len(prep.body)))
    try:
        with request.urlopen(req, timeout=timeout) as resp:
            content = resp.read()
            headers = {k.lower(): v for k, v in resp.getheaders()}
            return SimpleResponse(resp.status, headers, content)
    except urllib_error.HTTPError as exc:
        error_body = exc.read()
        message = error_body.decode("utf-8", errors="ignore") or exc.reason
        raise RuntimeError(f"HTTP {exc.code}: {message}")
    except urllib_error.URLError as exc:
        raise RuntimeError(f"Cannot reach {prep.url}: {exc.reason}")


def _run_analyze(args: argparse.Namespace) -> int:
    if not args.file.exists():
        print(f"astrovision: File not found: {args.file}", file=sys.stderr)
        return 2

    if args.local:
        if args.dry_run:
            print(f"LOCAL analyze_discovery {args.file}")
            return 0
        from astrovision.pipeline import DiscoveryPipeline

        try:
            result = DiscoveryPipeline(Settings.from_env()).analyze_discovery(args.file.read_bytes())
        except AstroVisionError as exc:
            print(f"astrovision: {type(exc).__name__}: {exc}", file=sys.stderr)
            return 2
        print(json.dumps(result.to_payload(), indent=2, ensure_ascii=False))
        return 0

    prep = _prepare_analyze(args)
    if args.dry_run:
        _print_dry_run(prep)
        return 0
    try:
        response = _send_request(prep, timeout=args.timeout)
    except RuntimeError as exc:
        print(f"astrovision: {exc}", file=sys.stderr)
        return 2
    print(json.dumps(response.json(), indent=2, ensure_ascii=False))
    return 0


def _run_reference(args: argparse.Namespace) -> int:
    settings = Settings.from_env()
    try:
        provider = get_reference_provider(
            args.service or settings.reference_service,
            size_deg=args.size_deg or settings.reference_size_deg,
            survey=settings.skyview_survey,
            timeout_s=args.timeout,
        )
    except ValueError as exc:
        print(f"astrovision: {exc}", file=sys.stderr)
        return 2

    reference = provider.locate(args.ra, args.dec)
    if args.dry_run:
        print(f"GET {reference.url}")
        return 0
    try:
        content = provider.fetch(reference)
    except AstroVisionError as exc:
        print(f"astrovision: {exc}", file=sys.stderr)
        return 2
    output = args.output or Path(f"reference_{args.ra:.4f}_{args.dec:.4f}.jpg")
    output.write_bytes(content)
    print(f"Saved reference image to {output.resolve()}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "analyze":
        return _run_analyze(args)
    if args.command == "reference":
        return _run_reference(args)
    parser.error("Unsupported command")  # pragma: no cover - argparse enforces options
    return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
