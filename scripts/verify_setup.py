#!/usr/bin/env python3
"""
Setup Verification Script

Checks configuration and connections before running the call router.
Run this after setting up your .env file.

Usage:
    python scripts/verify_setup.py
"""

import asyncio
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables
from dotenv import load_dotenv
load_dotenv()


def print_header(title: str) -> None:
    """Print section header."""
    print(f"\n{'='*60}")
    print(f" {title}")
    print(f"{'='*60}")


def print_result(name: str, success: bool, message: str = "") -> None:
    """Print check result."""
    status = "[PASS]" if success else "[FAIL]"
    color = "\033[92m" if success else "\033[91m"
    reset = "\033[0m"
    msg = f" - {message}" if message else ""
    print(f"  {color}{status}{reset} {name}{msg}")


def check_env_file() -> bool:
    """Check if .env file exists."""
    exists = (project_root / ".env").exists()
    print_result(".env file", exists, "Found" if exists else "Not found. Copy .env.example to .env")
    return exists


def check_required_vars() -> dict[str, bool]:
    """Check required environment variables."""
    results = {}

    required = [
        ("DATABASE_URL", "Call and queue records"),
        ("REDIS_URL", "Presence registry"),
        ("TWILIO_ACCOUNT_SID", "Telephony provider account"),
        ("TWILIO_AUTH_TOKEN", "Telephony provider credentials"),
        ("TWILIO_WEBHOOK_BASE_URL", "Public URL for provider callbacks"),
    ]

    for var, description in required:
        value = os.getenv(var, "")
        if not value:
            print_result(var, False, f"Not set - {description}")
            results[var] = False
            continue

        if "TOKEN" in var or "SID" in var:
            masked = f"{value[:6]}...{value[-4:]}" if len(value) > 12 else "***"
        else:
            masked = value
        print_result(var, True, f"Set ({masked})")
        results[var] = True

    return results


def check_optional_vars() -> None:
    """Show optional routing settings."""
    optional = [
        ("APP_ENV", "development"),
        ("PRESENCE_BACKEND", "redis"),
        ("ROUTING_DEFAULT_QUEUE_ID", "support-queue"),
        ("ROUTING_DEFAULT_STRATEGY", "round_robin"),
        ("RING_TIMEOUT_SECONDS", "30"),
        ("TWILIO_VALIDATE_SIGNATURES", "false"),
    ]

    for var, default in optional:
        print_result(var, True, os.getenv(var, default))


async def check_postgres() -> bool:
    """Verify PostgreSQL connection."""
    from app.infra.database import check_db_health

    healthy = await check_db_health()
    print_result("PostgreSQL", healthy, "Connection successful" if healthy else "Connection failed")
    return healthy


async def check_redis() -> bool:
    """Verify Redis connection."""
    from app.infra.redis import check_redis_health

    healthy = await check_redis_health()
    print_result("Redis", healthy, "Connection successful" if healthy else "Connection failed")
    return healthy


async def check_twilio() -> bool:
    """Verify the Twilio credentials by fetching the account."""
    from twilio.base.exceptions import TwilioRestException
    from twilio.rest import Client

    sid = os.getenv("TWILIO_ACCOUNT_SID", "")
    token = os.getenv("TWILIO_AUTH_TOKEN", "")
    client = Client(sid, token)

    loop = asyncio.get_running_loop()
    try:
        account = await loop.run_in_executor(None, lambda: client.api.accounts(sid).fetch())
    except TwilioRestException as e:
        print_result("Twilio", False, f"{e.status} {e.msg}"[:60])
        return False

    print_result("Twilio", True, f"Account {account.friendly_name} ({account.status})")
    return True


def check_dependencies() -> bool:
    """Check if required Python packages are installed."""
    required_packages = [
        "fastapi",
        "uvicorn",
        "pydantic",
        "pydantic_settings",
        "sqlalchemy",
        "asyncpg",
        "redis",
        "twilio",
        "multipart",
    ]

    missing = []
    for package in required_packages:
        try:
            __import__(package)
        except ImportError:
            missing.append(package)

    if missing:
        print_result("Python packages", False, f"Missing: {', '.join(missing)}")
        return False
    print_result("Python packages", True, "All required packages installed")
    return True


async def main():
    """Run all verification checks."""
    print("\n" + "="*60)
    print(" Call Router - Setup Verification")
    print("="*60)

    critical_failed = False

    print_header("Environment File")
    check_env_file()

    print_header("Python Dependencies")
    if not check_dependencies():
        critical_failed = True

    print_header("Required Environment Variables")
    var_results = check_required_vars()

    print_header("Optional Settings")
    check_optional_vars()

    print_header("Service Connections")

    if var_results.get("DATABASE_URL"):
        if not await check_postgres():
            critical_failed = True
    else:
        print_result("PostgreSQL", False, "Skipped - DATABASE_URL not set")

    if os.getenv("PRESENCE_BACKEND", "redis") == "redis":
        if not var_results.get("REDIS_URL") or not await check_redis():
            critical_failed = True
    else:
        print_result("Redis", True, "Skipped - in-memory presence backend")

    if var_results.get("TWILIO_ACCOUNT_SID") and var_results.get("TWILIO_AUTH_TOKEN"):
        if not await check_twilio():
            critical_failed = True
    else:
        print_result("Twilio", False, "Skipped - credentials not set")

    print_header("Summary")

    if critical_failed:
        print("\n  \033[91mCRITICAL: Some required services failed.\033[0m")
        print("  Please fix the issues above before running the application.")
        print()
        return 1

    print("\n  \033[92mAll checks passed!\033[0m")
    print("  You can start the application with:")
    print("    uvicorn app.main:app --reload")
    print()
    return 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
