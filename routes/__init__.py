from . import (
    auth,
    configuration,
    daily_records,
    expenses,
    payrolls,
    reports,
    time_entries,
    users,
)

__all__ = [
    "auth",
    "configuration",
    "daily_records",
    "expenses",
    "payrolls",
    "reports",
    "time_entries",
    "users",
]
