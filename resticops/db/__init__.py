# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Database drivers - dump, wipe, import and verify per engine.
"""

from typing import Callable, Dict

from resticops.config import DatabaseConfig, DbDriver, Settings
from resticops.db.base import DUMP_RELATIVE_PATH, DatabaseDriver, DumpResult
from resticops.db.mysql import MySqlDriver
from resticops.db.postgres import PostgresDriver
from resticops.db.sqlite import SqliteDriver
from resticops.exceptions import ConfigurationError

DriverFactory = Callable[[DatabaseConfig, Settings], DatabaseDriver]

DRIVERS: Dict[DbDriver, type] = {
    DbDriver.MYSQL: MySqlDriver,
    DbDriver.MARIADB: MySqlDriver,
    DbDriver.POSTGRES: PostgresDriver,
    DbDriver.SQLITE: SqliteDriver,
}


def get_driver(config: DatabaseConfig, settings: Settings) -> DatabaseDriver:
    """
    Build the driver strategy for a connection.

    Args:
        config: Database connection
        settings: Settings snapshot (timeouts, preserved tables)

    Returns:
        DatabaseDriver for config.driver

    Raises:
        ConfigurationError: If the driver is not supported
    """
    try:
        driver_class = DRIVERS.get(DbDriver(config.driver))
    except ValueError:
        driver_class = None
    if driver_class is None:
        raise ConfigurationError(
            f"Database driver [{config.driver}] is not supported.",
            missing=["driver"],
        )
    return driver_class(config, settings)


__all__ = [
    "DUMP_RELATIVE_PATH",
    "DRIVERS",
    "DatabaseDriver",
    "DriverFactory",
    "DumpResult",
    "MySqlDriver",
    "PostgresDriver",
    "SqliteDriver",
    "get_driver",
]
