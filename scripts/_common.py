"""Shared bootstrap for the receivables maintenance scripts."""

from __future__ import annotations

import os
import sys

# Allow importing the project packages when run as a script (no PYTHONPATH required).
_script_dir = os.path.dirname(os.path.abspath(__file__))
_root = os.path.dirname(_script_dir)
if _root not in sys.path:
    sys.path.insert(0, _root)

from billing_kernel.db.engine import (  # noqa: E402
    get_session_factory,
    init_engine_from_url,
    resolve_database_url,
)
from billing_modules.receivables.config import ReceivablesConfig, load_config  # noqa: E402
from billing_modules.receivables.service import ReceivablesService  # noqa: E402
from billing_modules.receivables.sql_repository import SqlAlchemyLedgerStore  # noqa: E402

DEFAULT_CONFIG = os.path.join(_root, "config", "receivables.yaml")


def add_common_arguments(parser) -> None:
    parser.add_argument(
        "--database-url",
        default=None,
        help="SQLAlchemy URL (default: $DATABASE_URL, then the local dev database)",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help="receivables YAML config (default: config/receivables.yaml)",
    )


def build_service(args) -> ReceivablesService:
    init_engine_from_url(resolve_database_url(args.database_url))
    if os.path.exists(args.config):
        config = load_config(args.config)
    else:
        config = ReceivablesConfig.with_defaults()
    return ReceivablesService(SqlAlchemyLedgerStore(get_session_factory()), config=config)
