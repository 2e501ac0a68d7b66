"""
Pre-flight checks for the multiworld bot

Checks the environment, the Archipelago install and writable data directories
before the bot logs in. Every check must pass for the bot to start.
"""

import importlib.util
import os
from pathlib import Path
import sys
from typing import Callable, List, Tuple


def print_test_header(test_name):
    print(f"\n{'='*60}")
    print(f"Checking: {test_name}")
    print('='*60)


def print_success(message):
    # Windows(cp949) 콘솔에서도 안전하게 출력되도록 ASCII만 사용
    print(f"[OK] {message}")


def print_error(message):
    print(f"[FAIL] {message}")


def print_info(message):
    print(f"  - {message}")


def check_environment_variables() -> bool:
    """DISCORD_TOKEN, PYTHON_PATH and AP_PATH must be set (usually via .env)."""
    print_test_header("Environment Variables")

    from dotenv import load_dotenv
    load_dotenv()

    ok = True
    for name in ("DISCORD_TOKEN", "PYTHON_PATH", "AP_PATH"):
        if os.getenv(name):
            print_success(f"{name} is set")
        else:
            print_error(f"{name} not found in environment variables")
            print_info(f"Please add {name} to your .env file")
            ok = False
    if not os.getenv("HOST_DOMAIN"):
        print_info("HOST_DOMAIN is not set; players will be shown 'localhost'")
    return ok


def check_required_packages() -> bool:
    print_test_header("Required Python Packages")

    required_packages = {
        'discord': 'discord.py',
        'aiohttp': 'aiohttp',
        'dotenv': 'python-dotenv',
        'pydantic': 'pydantic',
        'psutil': 'psutil',
        'yaml': 'PyYAML',
        'sqlalchemy': 'SQLAlchemy',
    }

    all_installed = True
    install_hint = "pip install -e ."

    for module_name, package_name in required_packages.items():
        try:
            spec = importlib.util.find_spec(module_name)
        except ModuleNotFoundError:
            spec = None

        if spec is not None:
            print_success(f"{package_name} is installed")
            continue

        print_error(f"{package_name} is NOT installed")
        print_info(f"Install with: {install_hint}")
        all_installed = False

    return all_installed


def check_archipelago_install() -> bool:
    """The interpreter exists and the Archipelago checkout has both entry scripts."""
    print_test_header("Archipelago Install")

    import config

    python_path = getattr(config, "PYTHON_PATH", None)
    ap_path = getattr(config, "AP_PATH", None)
    if not python_path or not ap_path:
        print_error("PYTHON_PATH / AP_PATH are not configured")
        return False

    ok = True
    if Path(python_path).exists():
        print_success(f"Python interpreter found: {python_path}")
    else:
        print_error(f"Python interpreter not found: {python_path}")
        ok = False

    for script in (config.GENERATE_SCRIPT, config.SERVER_SCRIPT):
        path = Path(ap_path) / script
        if path.is_file():
            print_success(f"{script} found")
        else:
            print_error(f"{script} not found in {ap_path}")
            ok = False

    from catalog import load_catalog
    from config_artifact import format_version

    catalog = load_catalog()
    print_info(f"Game catalog: Archipelago {format_version(catalog.version)}, {len(catalog.games)} games")
    return ok


def check_data_directories() -> bool:
    print_test_header("Data Directories")

    import config

    ok = True
    for name in ("GAMES_DIR", "YAML_DIR"):
        path = Path(getattr(config, name))
        try:
            path.mkdir(parents=True, exist_ok=True)
            probe = path / ".write_test"
            probe.write_text("ok", encoding="utf-8")
            probe.unlink()
            print_success(f"{name} is writable: {path}")
        except OSError as e:
            print_error(f"{name} is not writable ({path}): {e}")
            ok = False

    from services.process_channel import fifo_supported

    mode = getattr(config, "SERVER_STDIO_MODE", "auto")
    if mode == "fifo" and not fifo_supported():
        print_error("SERVER_STDIO_MODE=fifo but named pipes are not available on this host")
        ok = False
    else:
        print_info(f"Server stdio mode: {mode} (named pipes {'available' if fifo_supported() else 'unavailable'})")
    return ok


def run_all_checks() -> bool:
    """Runs every check in order and stops on the first failure."""
    print("\n" + "="*60)
    print("Multiworld Bot - Pre-Flight System Check")
    print("="*60)

    checks: List[Tuple[str, Callable[[], bool]]] = [
        ("Environment Variables", check_environment_variables),
        ("Required Packages", check_required_packages),
        ("Archipelago Install", check_archipelago_install),
        ("Data Directories", check_data_directories),
    ]

    for i, (check_name, check_func) in enumerate(checks, 1):
        try:
            result = check_func()
        except Exception as e:
            print(f"\n\n[FAIL] Check '{check_name}' crashed: {e}")
            return False

        if not result:
            print(f"\n\n[FAIL] Check failed: {check_name}")
            print("="*60)
            print("Pre-flight checks stopped due to failure.")
            print("Please fix the error above before continuing.")
            print("="*60 + "\n")
            return False
        print(f"\n[{i}/{len(checks)}] [OK] {check_name} - PASSED")

    print("\n" + "="*60)
    print("ALL PRE-FLIGHT CHECKS PASSED")
    print("="*60 + "\n")
    return True


if __name__ == "__main__":
    success = run_all_checks()
    sys.exit(0 if success else 1)
