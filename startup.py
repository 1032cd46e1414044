"""
Home Bridge - Startup Validation
Ensures configuration is valid before the bridge starts.
"""

import os
import json
import shutil
from pathlib import Path
from typing import List, Tuple

from dotenv import load_dotenv


class Colors:
    OK = '\033[92m'
    WARN = '\033[93m'
    FAIL = '\033[91m'
    INFO = '\033[94m'
    BOLD = '\033[1m'
    DIM = '\033[2m'
    END = '\033[0m'


def ok(msg): print(f"{Colors.OK}✓{Colors.END} {msg}")
def warn(msg): print(f"{Colors.WARN}⚠{Colors.END} {msg}")
def fail(msg): print(f"{Colors.FAIL}✗{Colors.END} {msg}")


BASE_DIR = Path(__file__).parent

TRUTHY = ("1", "true", "yes", "on")


def _enabled(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in TRUTHY


def check_env_file(interactive: bool = True) -> Tuple[bool, List[str]]:
    """Check that .env exists, offering to copy .env.example."""
    env_file = BASE_DIR / ".env"
    env_example = BASE_DIR / ".env.example"
    issues = []

    if env_file.exists():
        ok(".env file found")
        return True, issues

    if os.getenv("DISCORD_TOKEN") or os.getenv("MATRIX_USER_ID"):
        # Container deployments pass everything through the environment
        ok("No .env file, using process environment")
        return True, issues

    if env_example.exists() and interactive:
        fail(".env file missing!")
        try:
            response = input("\nCreate .env from .env.example? [Y/n]: ").strip().lower()
            if response in ('', 'y', 'yes'):
                shutil.copy(env_example, env_file)
                ok("Created .env from .env.example")
                warn("Please edit .env and add your tokens, then restart!")
                issues.append("new .env created - needs editing")
            else:
                issues.append("missing .env")
        except (EOFError, KeyboardInterrupt):
            issues.append("missing .env")
    else:
        fail(".env file missing!")
        issues.append("missing .env")

    return len(issues) == 0, issues


def check_providers_config() -> Tuple[bool, List[str]]:
    """Check providers.json if present, otherwise OPENAI_API_KEY."""
    providers_file = BASE_DIR / "providers.json"
    issues = []

    if not providers_file.exists():
        if os.getenv("OPENAI_API_KEY"):
            ok("OPENAI_API_KEY is set")
        else:
            fail("OPENAI_API_KEY not set and no providers.json found")
            issues.append("missing OPENAI_API_KEY")
        return len(issues) == 0, issues

    try:
        with open(providers_file, encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        fail(f"providers.json is invalid JSON: {e}")
        return False, ["invalid providers.json"]

    providers = data.get("providers", [])
    if not providers:
        fail("providers.json has no providers configured!")
        return False, ["missing providers in providers.json"]

    ok(f"providers.json: {len(providers)} provider(s)")
    for i, p in enumerate(providers):
        name = p.get("name", f"Provider {i+1}")
        if not p.get("url"):
            warn(f"  [{name}] No URL configured")
            issues.append(f"{name}: no URL")
        key_env = p.get("key_env", "")
        if key_env and not os.getenv(key_env):
            warn(f"  [{name}] {key_env} not set")
            issues.append(f"{name}: {key_env} not set")
    return len(issues) == 0, issues


def check_platforms() -> Tuple[bool, List[str]]:
    """Each enabled platform needs its credentials."""
    issues = []
    discord_on = _enabled("DISCORD_ENABLE", True)
    matrix_on = _enabled("MATRIX_ENABLE", False)

    if not discord_on and not matrix_on:
        fail("Neither Discord nor Matrix is enabled")
        return False, ["invalid: no platform enabled"]

    if discord_on:
        token = os.getenv("DISCORD_TOKEN")
        if not token:
            fail("DISCORD_TOKEN not set")
            issues.append("missing DISCORD_TOKEN")
        elif len(token) > 50 and '.' in token:
            ok("DISCORD_TOKEN is set")
        else:
            warn("DISCORD_TOKEN looks invalid (too short or wrong format)")
            issues.append("DISCORD_TOKEN looks invalid")
        admin = os.getenv("DISCORD_ADMIN_ID", "")
        if admin and not admin.isdigit():
            fail("DISCORD_ADMIN_ID must be a numeric user id")
            issues.append("invalid DISCORD_ADMIN_ID")

    if matrix_on:
        for name in ("MATRIX_USER_ID", "MATRIX_PASSWORD"):
            if os.getenv(name):
                ok(f"{name} is set")
            else:
                fail(f"{name} not set")
                issues.append(f"missing {name}")

    return len(issues) == 0, issues


def check_data_sources() -> Tuple[bool, List[str]]:
    """Tools work without these, they just report themselves unavailable."""
    issues = []
    for name, tool in (("OPENWEATHERMAP_API_KEY", "weather"), ("HA_API_URL", "vehicle status"),
                       ("HA_TOKEN", "vehicle status")):
        if os.getenv(name):
            ok(f"{name} is set")
        else:
            warn(f"{name} not set, {tool} tool disabled")
            issues.append(f"{name} not set")
    return len(issues) == 0, issues


def validate_startup(interactive: bool = True) -> bool:
    """Run all startup checks; True if the bridge may start."""
    load_dotenv()
    print(f"\n{Colors.BOLD}{'='*50}")
    print("Home Bridge - Startup Validation")
    print(f"{'='*50}{Colors.END}\n")

    all_issues = []
    checks = [
        ("Configuration Files", lambda: check_env_file(interactive)),
        ("Language Model", check_providers_config),
        ("Platforms", check_platforms),
        ("Data Sources", check_data_sources),
    ]
    for i, (title, check) in enumerate(checks, 1):
        print(f"\n{Colors.BOLD}[{i}/{len(checks)}] {title}{Colors.END}")
        _, issues = check()
        all_issues.extend(issues)

    print(f"\n{Colors.BOLD}{'='*50}{Colors.END}")
    critical = [i for i in all_issues if 'missing' in i.lower() or 'invalid' in i.lower()]

    if not all_issues:
        print(f"{Colors.OK}{Colors.BOLD}✓ All checks passed! Starting bridge...{Colors.END}")
        return True
    if critical:
        print(f"{Colors.FAIL}{Colors.BOLD}✗ {len(critical)} critical issue(s) found:{Colors.END}")
        for issue in critical:
            print(f"  • {issue}")
        return False

    print(f"{Colors.WARN}{Colors.BOLD}⚠ {len(all_issues)} warning(s):{Colors.END}")
    for issue in all_issues:
        print(f"  • {issue}")
    return True


if __name__ == "__main__":
    import sys
    sys.exit(0 if validate_startup(interactive=True) else 1)
