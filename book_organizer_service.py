#!/usr/bin/env python3
"""
Book Organizer - Service Installer & Runner
===========================================
Generates and installs a systemd service that keeps the directory watcher
running in the background.

Usage:
  python book_organizer_service.py install   [--user] [--config PATH] [--watch-dir DIR]
  python book_organizer_service.py uninstall [--user]
  python book_organizer_service.py status    [--user]
  python book_organizer_service.py run       [--config PATH] [--watch-dir DIR]  # foreground
"""

import argparse
import os
import pwd
import shutil
import subprocess
import sys
import textwrap
from typing import List, Optional


# ============================================================================
# Defaults
# ============================================================================

SERVICE_NAME = "book-organizer"
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
ORGANIZER_SCRIPT = os.path.join(SCRIPT_DIR, "book_organizer.py")
CONFIG_SEARCH_PATHS = [
    os.path.join(SCRIPT_DIR, "book_organizer.yaml"),
    os.path.expanduser("~/.config/book-organizer/config.yaml"),
    "/etc/book-organizer/config.yaml",
]
USER_ENV_FILE = os.path.expanduser("~/.config/book-organizer/env")
SYSTEM_ENV_FILE = "/etc/book-organizer/env"


def find_python() -> str:
    """Find the Python interpreter to use."""
    venv_python = os.path.expanduser("~/.venvs/book-organizer/bin/python3")
    if os.path.isfile(venv_python):
        return venv_python
    return shutil.which("python3") or sys.executable


def find_config(explicit: Optional[str] = None) -> str:
    if explicit and os.path.isfile(explicit):
        return os.path.abspath(explicit)
    for path in CONFIG_SEARCH_PATHS:
        if os.path.isfile(path):
            return path
    return ""


def build_command(python_path: str, config_path: str = "", watch_dir: Optional[str] = None) -> List[str]:
    cmd = [python_path, ORGANIZER_SCRIPT]
    if watch_dir:
        cmd.append(os.path.abspath(os.path.expanduser(watch_dir)))
    if config_path:
        cmd.extend(["--config", config_path])
    return cmd


# ============================================================================
# Systemd Unit Generation
# ============================================================================

def generate_service_unit(python_path: str, config_path: str, user_mode: bool,
                          watch_dir: Optional[str] = None) -> str:
    """Generate the .service unit file content."""
    exec_start = " ".join(build_command(python_path, config_path, watch_dir))

    unit = textwrap.dedent(f"""\
    [Unit]
    Description=Book Organizer (watch a directory and file incoming ebooks)
    After=network-online.target
    Wants=network-online.target

    [Service]
    Type=simple
    ExecStart={exec_start}
    EnvironmentFile=-{USER_ENV_FILE if user_mode else SYSTEM_ENV_FILE}
    Restart=on-failure
    RestartSec=10
    TimeoutStopSec=120

    # Logging
    StandardOutput=journal
    StandardError=journal
    SyslogIdentifier={SERVICE_NAME}

    # Security hardening
    NoNewPrivileges=true
    PrivateTmp=true
    """)

    if not user_mode:
        user = pwd.getpwuid(os.getuid()).pw_name
        unit += f"User={user}\n"
        unit += f"Group={user}\n"

    unit += textwrap.dedent(f"""\

    [Install]
    WantedBy={'default.target' if user_mode else 'multi-user.target'}
    """)

    return unit


def generate_env_file() -> str:
    """Generate template environment file for API keys."""
    return textwrap.dedent("""\
    # Book Organizer - Environment Variables
    # Place at ~/.config/book-organizer/env (user service)
    # or /etc/book-organizer/env (system service).

    # Google Books API key (optional, raises the anonymous quota)
    # GOOGLE_API_KEY=AIza...

    # Directory to watch when none is given on the command line
    # BOOK_ORGANIZER_WATCH_DIR=/home/me/Downloads
    """)


def _write_unit(path: str, content: str, user_mode: bool) -> bool:
    if user_mode:
        with open(path, 'w') as f:
            f.write(content)
        return True
    proc = subprocess.run(["sudo", "tee", path], input=content.encode(), capture_output=True)
    if proc.returncode != 0:
        print(f"  ✗ Failed to write {path}: {proc.stderr.decode()}")
        return False
    return True


def _systemctl(user_mode: bool, privileged: bool = True) -> List[str]:
    if user_mode:
        return ["systemctl", "--user"]
    return ["sudo", "systemctl"] if privileged else ["systemctl"]


# ============================================================================
# Install / Uninstall
# ============================================================================

def install(args) -> bool:
    """Install and enable the systemd service."""
    python_path = find_python()
    config_path = find_config(args.config)
    user_mode = args.user

    unit_dir = os.path.expanduser("~/.config/systemd/user") if user_mode else "/etc/systemd/system"
    systemctl = _systemctl(user_mode)
    if user_mode:
        os.makedirs(unit_dir, exist_ok=True)

    env_path = USER_ENV_FILE
    os.makedirs(os.path.dirname(env_path), exist_ok=True)
    if not os.path.exists(env_path):
        with open(env_path, 'w') as f:
            f.write(generate_env_file())
        os.chmod(env_path, 0o600)
        print(f"  ✓ Environment file: {env_path}")
    else:
        print(f"  · Environment file exists: {env_path}")

    service_path = os.path.join(unit_dir, f"{SERVICE_NAME}.service")
    content = generate_service_unit(python_path, config_path, user_mode, args.watch_dir)
    if not _write_unit(service_path, content, user_mode):
        return False
    print(f"  ✓ Service unit: {service_path}")

    subprocess.run([*systemctl, "daemon-reload"], capture_output=True)
    subprocess.run([*systemctl, "enable", f"{SERVICE_NAME}.service"], capture_output=True)
    print("  ✓ Service enabled")

    print(f"\n{'='*60}")
    print("Installation complete!")
    print(f"{'='*60}")
    print("\nNext steps:")
    print(f"  1. Edit your config: {config_path or 'book_organizer.yaml'}")
    if not user_mode:
        print(f"  2. Copy {env_path} to {SYSTEM_ENV_FILE} and add your API key")
    else:
        print(f"  2. Add your API key to: {env_path}")
    print("  3. Start the watcher:")
    print(f"       {' '.join(systemctl)} start {SERVICE_NAME}.service")
    print("\nUseful commands:")
    print(f"  {' '.join(systemctl)} status {SERVICE_NAME}.service")
    print(f"  journalctl {'--user ' if user_mode else ''}-u {SERVICE_NAME} -f")

    return True


def uninstall(args):
    """Stop, disable and remove the systemd service."""
    user_mode = args.user
    unit_dir = os.path.expanduser("~/.config/systemd/user") if user_mode else "/etc/systemd/system"
    systemctl = _systemctl(user_mode)

    subprocess.run([*systemctl, "stop", f"{SERVICE_NAME}.service"], capture_output=True)
    subprocess.run([*systemctl, "disable", f"{SERVICE_NAME}.service"], capture_output=True)

    path = os.path.join(unit_dir, f"{SERVICE_NAME}.service")
    if os.path.exists(path):
        if user_mode:
            os.remove(path)
        else:
            subprocess.run(["sudo", "rm", path], capture_output=True)
        print(f"  ✓ Removed: {path}")

    subprocess.run([*systemctl, "daemon-reload"], capture_output=True)
    print("  ✓ Uninstalled")
    # Env file is left in place, it may hold the user's API key
    if os.path.exists(USER_ENV_FILE):
        print(f"\n  Note: Env file still exists: {USER_ENV_FILE}")


def show_status(args):
    systemctl = _systemctl(args.user, privileged=False)
    print("Service status:")
    subprocess.run([*systemctl, "status", f"{SERVICE_NAME}.service"], check=False)
    print("\nRecent logs:")
    journal = ["journalctl"]
    if args.user:
        journal.append("--user")
    subprocess.run([*journal, "-u", SERVICE_NAME, "-n", "20", "--no-pager"], check=False)


def run_foreground(args):
    """Run the watcher in the foreground, exactly as the service would."""
    cmd = build_command(find_python(), find_config(args.config), args.watch_dir)
    print(f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd)
    sys.exit(result.returncode)


# ============================================================================
# Main
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Book Organizer service installer and manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest='command', help='Command')

    p_install = sub.add_parser('install', help='Install systemd service')
    p_install.add_argument('--user', action='store_true', help='Install as user service (no sudo)')
    p_install.add_argument('--config', help='Path to config file')
    p_install.add_argument('--watch-dir', help='Directory to watch')

    p_uninstall = sub.add_parser('uninstall', help='Remove systemd service')
    p_uninstall.add_argument('--user', action='store_true')

    p_status = sub.add_parser('status', help='Show service status')
    p_status.add_argument('--user', action='store_true')

    p_run = sub.add_parser('run', help='Run the watcher in the foreground')
    p_run.add_argument('--config', help='Path to config file')
    p_run.add_argument('--watch-dir', help='Directory to watch')

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    commands = {
        'install': install,
        'uninstall': uninstall,
        'status': show_status,
        'run': run_foreground,
    }
    commands[args.command](args)


if __name__ == '__main__':
    main()
