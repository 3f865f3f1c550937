#!/usr/bin/env python3
"""
Book Organizer - Configuration Loader
=====================================
Loads configuration from YAML file with CLI flag overrides.

Priority (highest wins):
  1. CLI flags (explicit only, not defaults)
  2. Environment variables (GOOGLE_API_KEY, BOOK_ORGANIZER_WATCH_DIR)
  3. Config file (book_organizer.yaml)
  4. Built-in defaults

Config file search order:
  1. --config <path>  (explicit)
  2. ./book_organizer.yaml  (current directory)
  3. <watch_dir>/book_organizer.yaml  (inside the watched directory)
  4. ~/.config/book-organizer/config.yaml  (user config)
  5. /etc/book-organizer/config.yaml  (system config)
"""

import argparse
import os
import sys
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG = {
    'watch_dir': '~/Downloads',
    'books_dir_name': 'Books',
    'log_dir': None,
    'google_api_key': None,
    'workers': 4,
    'debounce_seconds': 1.0,
    'catalog': {
        'max_attempts': 3,
        'initial_backoff': 1.0,
        'timeout': 10,
    },
    'extraction': {
        'scan_pages': 10,
        'deep_scan': True,
        'title_min_length': 5,
        'title_max_length': 100,
    },
    'verbose': False,
}


def load_yaml(path: str) -> Dict[str, Any]:
    """Load a YAML config file. The top level must be a mapping."""
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"expected a mapping at the top level, got {type(data).__name__}")
    return data


def find_config_file(watch_dir: Optional[str] = None, explicit_path: Optional[str] = None) -> Optional[str]:
    """Search for config file in standard locations."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        print(f"Warning: Config file not found: {explicit_path}", file=sys.stderr)
        return None

    search_paths = [
        os.path.join(os.getcwd(), 'book_organizer.yaml'),
        os.path.join(os.getcwd(), 'book_organizer.yml'),
    ]

    if watch_dir:
        watch_dir = os.path.expanduser(watch_dir)
        search_paths.extend([
            os.path.join(watch_dir, 'book_organizer.yaml'),
            os.path.join(watch_dir, 'book_organizer.yml'),
        ])

    search_paths.extend([
        os.path.expanduser('~/.config/book-organizer/config.yaml'),
        os.path.expanduser('~/.config/book-organizer/config.yml'),
        '/etc/book-organizer/config.yaml',
    ])

    for path in search_paths:
        if os.path.isfile(path):
            return path

    return None


def to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def generate_default_config() -> str:
    header = (
        "# Book Organizer configuration\n"
        "# Save as book_organizer.yaml, ~/.config/book-organizer/config.yaml\n"
        "# or /etc/book-organizer/config.yaml.\n"
        "# google_api_key may also come from the GOOGLE_API_KEY environment variable.\n\n"
    )
    return header + yaml.safe_dump(DEFAULT_CONFIG, sort_keys=False, default_flow_style=False)


class OrganizerConfig:
    """Merged configuration from config file, environment, and CLI args."""

    def __init__(self, args: argparse.Namespace, config_data: Dict[str, Any], config_path: Optional[str]):
        self._args = args
        self._config = config_data
        self.config_path = config_path

        # CLI args that were explicitly set (not argparse defaults)
        self._explicit_cli = set()
        if hasattr(args, '_explicit'):
            self._explicit_cli = args._explicit

    def _get(self, cli_name: str, config_key: str = None, env_var: str = None,
             default: Any = None, type_fn=None) -> Any:
        """Get config value with priority: explicit CLI > env > config > default."""
        config_key = config_key or cli_name

        # 1. Explicit CLI flag
        cli_val = getattr(self._args, cli_name, None)
        if cli_name in self._explicit_cli and cli_val is not None:
            return type_fn(cli_val) if type_fn else cli_val

        # 2. Environment variable
        if env_var:
            env_val = os.environ.get(env_var)
            if env_val:
                return type_fn(env_val) if type_fn else env_val

        # 3. Config file, dotted keys like "catalog.max_attempts"
        config_val = self._config
        for part in config_key.split('.'):
            if isinstance(config_val, dict):
                config_val = config_val.get(part)
            else:
                config_val = None
                break

        if config_val is not None:
            if isinstance(config_val, str) and config_val.startswith('~'):
                config_val = os.path.expanduser(config_val)
            return type_fn(config_val) if type_fn else config_val

        # 4. Non-explicit CLI value (argparse default)
        if cli_val is not None:
            return cli_val

        # 5. Hard default
        return default

    # --- Directories ---
    @property
    def watch_dir(self) -> str:
        return os.path.expanduser(self._get('watch_dir', env_var='BOOK_ORGANIZER_WATCH_DIR',
                                            default=DEFAULT_CONFIG['watch_dir']))

    @property
    def books_dir_name(self) -> str:
        return self._get('books_dir_name', default=DEFAULT_CONFIG['books_dir_name'])

    @property
    def log_dir(self) -> Optional[str]:
        value = self._get('log_dir')
        return os.path.expanduser(value) if value else None

    # --- Catalog ---
    @property
    def google_api_key(self) -> Optional[str]:
        return self._get('google_api_key', env_var='GOOGLE_API_KEY')

    @property
    def max_attempts(self) -> int:
        return self._get('max_attempts', 'catalog.max_attempts', default=3, type_fn=int)

    @property
    def initial_backoff(self) -> float:
        return self._get('initial_backoff', 'catalog.initial_backoff', default=1.0, type_fn=float)

    @property
    def request_timeout(self) -> float:
        return self._get('timeout', 'catalog.timeout', default=10, type_fn=float)

    # --- Processing ---
    @property
    def workers(self) -> int:
        return self._get('workers', default=4, type_fn=int)

    @property
    def debounce_seconds(self) -> float:
        return self._get('debounce', 'debounce_seconds', default=1.0, type_fn=float)

    @property
    def scan_pages(self) -> int:
        return self._get('scan_pages', 'extraction.scan_pages', default=10, type_fn=int)

    @property
    def deep_scan(self) -> bool:
        return self._get('deep_scan', 'extraction.deep_scan', default=True, type_fn=to_bool)

    @property
    def title_min_length(self) -> int:
        return self._get('title_min_length', 'extraction.title_min_length', default=5, type_fn=int)

    @property
    def title_max_length(self) -> int:
        return self._get('title_max_length', 'extraction.title_max_length', default=100, type_fn=int)

    @property
    def verbose(self) -> bool:
        return self._get('verbose', default=False, type_fn=to_bool)

    # --- Modes (CLI only) ---
    @property
    def once(self) -> bool:
        return bool(getattr(self._args, 'once', False))

    @property
    def resolve(self) -> Optional[list]:
        return getattr(self._args, 'resolve', None)

    @property
    def generate_config(self) -> bool:
        return bool(getattr(self._args, 'generate_config', False))

    def to_dict(self) -> Dict[str, Any]:
        """Dump resolved config as dict (for logging). The API key is masked."""
        return {
            'watch_dir': self.watch_dir,
            'books_dir_name': self.books_dir_name,
            'log_dir': self.log_dir,
            'google_api_key': '***' if self.google_api_key else None,
            'workers': self.workers,
            'debounce_seconds': self.debounce_seconds,
            'max_attempts': self.max_attempts,
            'initial_backoff': self.initial_backoff,
            'request_timeout': self.request_timeout,
            'scan_pages': self.scan_pages,
            'deep_scan': self.deep_scan,
            'verbose': self.verbose,
            'config_path': self.config_path,
        }

    def __repr__(self):
        return f"OrganizerConfig({self.config_path or 'defaults'})"


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Watch a directory and file incoming PDF/EPUB books as 'Title - Author'.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
Examples:
  # Watch ~/Downloads until interrupted
  python book_organizer.py ~/Downloads

  # Process what is already there, then exit
  python book_organizer.py ~/Downloads --once

  # Retry a file that could not be identified
  python book_organizer.py ~/Downloads --resolve ~/Downloads/scan.pdf 978-0-306-40615-7

  # Generate default config file
  python book_organizer.py --generate-config > book_organizer.yaml
        """,
    )

    parser.add_argument('watch_dir', nargs='?', help='Directory to watch (default: ~/Downloads)')
    parser.add_argument('--config', '-c', help='Path to config file (YAML)')
    parser.add_argument('--generate-config', action='store_true',
                        help='Print a default config file and exit')

    modes = parser.add_argument_group('modes')
    modes.add_argument('--once', action='store_true',
                       help='Process existing files once and exit instead of watching')
    modes.add_argument('--resolve', nargs=2, metavar=('FILE', 'ISBN'),
                       help='Process FILE using a manually supplied ISBN')

    catalog = parser.add_argument_group('catalog')
    catalog.add_argument('--google-api-key', help='Google Books API key (or GOOGLE_API_KEY env)')
    catalog.add_argument('--max-attempts', type=int, help='Lookup attempts per file (default: 3)')
    catalog.add_argument('--timeout', type=float, help='HTTP timeout in seconds (default: 10)')

    proc = parser.add_argument_group('processing')
    proc.add_argument('--workers', type=int, help='Concurrent files (default: 4)')
    proc.add_argument('--debounce', type=float,
                      help='Quiet period before rescanning, seconds (default: 1.0)')
    proc.add_argument('--scan-pages', type=int, help='Pages searched for an ISBN (default: 10)')
    proc.add_argument('--no-deep-scan', dest='deep_scan', action='store_false', default=None,
                      help='Do not search past --scan-pages when no ISBN was found')

    output = parser.add_argument_group('output')
    output.add_argument('--log-dir', help='Directory for logs (default: <watch_dir>/.book_organizer_logs)')
    output.add_argument('--verbose', '-v', action='store_true', default=None,
                        help='Verbose debug output')

    return parser


def parse_args_and_config(argv=None) -> OrganizerConfig:
    """Parse CLI args and merge with config file."""
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    # Explicit args are the ones that differ from argparse defaults
    explicit = set()
    defaults = parser.parse_args([])
    for key, val in vars(args).items():
        if val is not None and val != getattr(defaults, key, None):
            explicit.add(key)
    args._explicit = explicit

    config_path = find_config_file(
        watch_dir=args.watch_dir or os.environ.get('BOOK_ORGANIZER_WATCH_DIR'),
        explicit_path=args.config,
    )

    config_data = {}
    if config_path:
        try:
            config_data = load_yaml(config_path)
            if args.verbose:
                print(f"Loaded config: {config_path}", file=sys.stderr)
        except (OSError, ValueError, yaml.YAMLError) as e:
            print(f"Warning: Failed to load config {config_path}: {e}", file=sys.stderr)

    return OrganizerConfig(args, config_data, config_path)
