"""Preflight checks for Framecast provider configuration.

Run this before starting the API to catch common misconfiguration:
  uv run python scripts/preflight.py

Optional network checks:
  uv run python scripts/preflight.py --check-http
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import httpx
from dotenv import load_dotenv

from framecast.services.errors import ConfigurationError
from framecast.services.signing import Credentials, TokenSigner


@dataclass
class Report:
    passed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    def ok(self, message: str) -> None:
        self.passed.append(message)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def fail(self, message: str) -> None:
        self.failures.append(message)

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)


def _load_environment() -> None:
    """Load local env files in precedence order without overwriting existing vars."""
    script_dir = Path(__file__).resolve().parent
    server_dir = script_dir.parent
    repo_dir = server_dir.parent
    candidates = [
        server_dir / ".env.local",
        server_dir / ".env",
        repo_dir / ".env",
    ]
    for env_file in candidates:
        if env_file.exists():
            load_dotenv(env_file, override=False)


def _is_valid_http_url(value: str) -> bool:
    """Return True when value is an absolute HTTP(S) URL."""
    parsed = urlparse((value or "").strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def _env_int(name: str, default: int, report: Report, *, minimum: int = 1) -> int:
    """Parse int env var and emit validation failures into the report."""
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        report.fail(f"{name} must be an integer. Got: {raw!r}")
        return default
    if value < minimum:
        report.fail(f"{name} must be >= {minimum}. Got: {value}")
    return value


def _env_float(name: str, default: float, report: Report, *, minimum: float = 0.0) -> float:
    """Parse float env var and emit validation failures into the report."""
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except ValueError:
        report.fail(f"{name} must be a number. Got: {raw!r}")
        return default
    if value < minimum:
        report.fail(f"{name} must be >= {minimum}. Got: {value}")
    return value


def _mask(value: str) -> str:
    """Mask secret values for safe console output."""
    trimmed = value.strip()
    if len(trimmed) < 8:
        return "***"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def check_image_provider(report: Report) -> None:
    """Validate FLUX Kontext settings used for image edits."""
    api_key = (os.getenv("BFL_API_KEY") or "").strip()
    if not api_key:
        report.fail("BFL_API_KEY is required for image edits.")
    else:
        report.ok(f"BFL_API_KEY detected ({_mask(api_key)}).")

    base = (os.getenv("BFL_API_BASE") or "https://api.bfl.ai/v1").strip()
    if not _is_valid_http_url(base):
        report.fail(f"BFL_API_BASE is not a valid HTTP(S) URL: {base!r}")
    else:
        report.ok(f"BFL_API_BASE={base}")


def check_video_provider(report: Report) -> None:
    """Validate Kling credentials by signing a sample token locally."""
    credentials = Credentials(
        issuer_key=(os.getenv("KLING_ACCESS_KEY") or "").strip(),
        signing_secret=(os.getenv("KLING_SECRET_KEY") or "").strip(),
    )
    try:
        token = TokenSigner().sign(credentials)
    except ConfigurationError as exc:
        report.fail(f"Kling credentials unusable: {exc}. Set KLING_ACCESS_KEY and KLING_SECRET_KEY.")
        return

    details = TokenSigner.describe(token, credentials)
    report.ok(
        f"Kling token signed for {details['issuer']} "
        f"(valid until {details['expires_at']}, {details['token_length']} chars)."
    )
    if details["secret_length"] < 16:
        report.warn("KLING_SECRET_KEY looks unusually short; verify it is correct.")

    base = (os.getenv("KLING_API_BASE") or "https://api.klingai.com").strip()
    if not _is_valid_http_url(base):
        report.fail(f"KLING_API_BASE is not a valid HTTP(S) URL: {base!r}")


def check_polling_budgets(report: Report) -> None:
    """Validate poll cadence, attempt budgets and wall-clock timeouts."""
    image_interval = _env_float("IMAGE_POLL_INTERVAL_SECONDS", 0.5, report, minimum=0.05)
    image_attempts = _env_int("IMAGE_POLL_MAX_ATTEMPTS", 120, report)
    image_timeout = _env_float("IMAGE_TIMEOUT_SECONDS", 30, report)
    video_interval = _env_float("VIDEO_POLL_INTERVAL_SECONDS", 10, report, minimum=0.05)
    video_attempts = _env_int("VIDEO_POLL_MAX_ATTEMPTS", 120, report)
    video_timeout = _env_float("VIDEO_TIMEOUT_SECONDS", 360, report)
    _env_float("PROVIDER_REQUEST_TIMEOUT_SECONDS", 30, report, minimum=1.0)

    if image_timeout and image_timeout < image_interval:
        report.fail("IMAGE_TIMEOUT_SECONDS is shorter than one poll interval; no status query can run.")
    if video_timeout and video_timeout < video_interval:
        report.fail("VIDEO_TIMEOUT_SECONDS is shorter than one poll interval; no status query can run.")
    if video_interval < 2.0:
        report.warn("VIDEO_POLL_INTERVAL_SECONDS is low; the video provider may rate-limit status queries.")
    report.ok(
        f"Image polling budget {image_attempts} x {image_interval:g}s; "
        f"video polling budget {video_attempts} x {video_interval:g}s."
    )

    margin = (os.getenv("TOKEN_REUSE_MARGIN_SECONDS") or "").strip()
    if margin:
        value = _env_float("TOKEN_REUSE_MARGIN_SECONDS", 60, report)
        if value >= 1800:
            report.fail("TOKEN_REUSE_MARGIN_SECONDS must be below the 1800s token lifetime.")
        else:
            report.ok(f"Bearer tokens reused until {value:g}s before expiry.")
    else:
        report.ok("Bearer tokens are signed fresh for every request.")


def check_task_store(report: Report) -> None:
    """Validate optional Supabase task-history settings."""
    url = (os.getenv("SUPABASE_URL") or "").strip()
    key = (os.getenv("SUPABASE_SERVICE_ROLE_KEY") or "").strip()
    if not url and not key:
        report.warn("Supabase not configured; task history stays in process memory.")
        return
    if not url or not key:
        report.fail("Set both SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY, or neither.")
        return
    if not _is_valid_http_url(url):
        report.fail(f"SUPABASE_URL is not a valid HTTP(S) URL: {url!r}")
        return
    report.ok(f"Supabase task history enabled ({url}, key {_mask(key)}).")


def check_secret_hygiene(report: Report) -> None:
    """Run lightweight secret safety checks for common local misconfigurations."""
    repo_dir = Path(__file__).resolve().parents[2]
    if (repo_dir / ".env").exists():
        report.warn("Root .env detected. Ensure it is local-only and gitignored.")

    access_key = (os.getenv("KLING_ACCESS_KEY") or "").strip()
    secret_key = (os.getenv("KLING_SECRET_KEY") or "").strip()
    if access_key and access_key == secret_key:
        report.fail("KLING_ACCESS_KEY and KLING_SECRET_KEY are identical; the secret key is likely misconfigured.")


def _probe(url: str, *, timeout_seconds: float) -> tuple[bool, str]:
    """Probe URL reachability and return (ok, message)."""
    try:
        with httpx.Client(timeout=timeout_seconds, follow_redirects=True) as client:
            response = client.get(url)
        if response.status_code >= 500:
            return (False, f"{url} responded with HTTP {response.status_code}.")
        return (True, f"{url} reachable (HTTP {response.status_code}).")
    except httpx.HTTPError as exc:
        return (False, f"{url} not reachable ({exc}).")


def check_http_health(report: Report, *, timeout_seconds: float) -> None:
    """Optionally confirm both provider hosts answer over HTTP."""
    targets = {
        "BFL": (os.getenv("BFL_API_BASE") or "https://api.bfl.ai/v1").strip(),
        "Kling": (os.getenv("KLING_API_BASE") or "https://api.klingai.com").strip(),
    }
    for name, url in targets.items():
        ok, message = _probe(url, timeout_seconds=timeout_seconds)
        if ok:
            report.ok(f"{name} endpoint check passed: {message}")
        else:
            report.fail(f"{name} endpoint check failed: {message}")


def print_report(report: Report) -> None:
    """Render a human-readable summary report to stdout."""
    for message in report.passed:
        print(f"[PASS] {message}")
    for message in report.warnings:
        print(f"[WARN] {message}")
    for message in report.failures:
        print(f"[FAIL] {message}")
    print(
        f"\nSummary: {len(report.passed)} passed, {len(report.warnings)} warnings, {len(report.failures)} failures."
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for optional network checks and probe timeouts."""
    parser = argparse.ArgumentParser(description="Framecast preflight checks")
    parser.add_argument(
        "--check-http",
        action="store_true",
        help="Probe the configured provider hosts before booting the API.",
    )
    parser.add_argument(
        "--http-timeout",
        type=float,
        default=3.0,
        help="Timeout (seconds) for preflight HTTP probes (default: 3.0).",
    )
    return parser.parse_args(argv)


def run_checks(*, check_http: bool = False, http_timeout: float = 3.0) -> Report:
    report = Report()
    check_image_provider(report)
    check_video_provider(report)
    check_polling_budgets(report)
    check_task_store(report)
    check_secret_hygiene(report)
    if check_http:
        check_http_health(report, timeout_seconds=max(http_timeout, 0.1))
    return report


def main(argv: list[str] | None = None) -> int:
    """Run preflight suite and return process exit code."""
    args = parse_args(argv)
    _load_environment()
    report = run_checks(check_http=args.check_http, http_timeout=args.http_timeout)
    print_report(report)
    return 1 if report.has_failures else 0


if __name__ == "__main__":
    sys.exit(main())
