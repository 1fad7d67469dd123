"""Edit-window policy.

Decides whether a transaction at a given packed time may still be created,
modified or deleted under a user's edit scope.

``today_or_later`` is anchored to the start of the day in the client's fixed
UTC offset. The week/month/year anchors count back from that client-side
start of day by the server-local weekday, day of month and day of year.
"""

from datetime import datetime, timezone, tzinfo
from typing import Optional

from models import Account, Transaction, TransactionEditScope, TransactionRowType
from periods import fixed_offset
from transaction_time import unix_time_from_transaction_time

SECONDS_PER_DAY = 24 * 60 * 60


def _sunday_based_weekday(moment: datetime) -> int:
    return (moment.weekday() + 1) % 7


def can_edit(
    scope: TransactionEditScope,
    transaction_time: int,
    now: datetime,
    utc_offset: int,
    first_day_of_week: int = 0,
    server_zone: tzinfo = timezone.utc,
) -> bool:
    if scope == TransactionEditScope.none:
        return False
    if scope == TransactionEditScope.all:
        return True

    tx_unix = unix_time_from_transaction_time(transaction_time)
    now_unix = int(now.timestamp())

    if scope == TransactionEditScope.last_24h_or_later:
        return tx_unix >= now_unix - SECONDS_PER_DAY

    client_now = now.astimezone(fixed_offset(utc_offset))
    client_today_first = now_unix - (
        client_now.hour * 3600 + client_now.minute * 60 + client_now.second
    )

    if scope == TransactionEditScope.today_or_later:
        return tx_unix >= client_today_first

    server_now = now.astimezone(server_zone)

    if scope == TransactionEditScope.this_week_or_later:
        days_since_week_start = _sunday_based_weekday(server_now) - first_day_of_week
        if days_since_week_start < 0:
            days_since_week_start += 7
        week_first = client_today_first - days_since_week_start * SECONDS_PER_DAY
        return tx_unix >= week_first

    if scope == TransactionEditScope.this_month_or_later:
        month_first = client_today_first - (server_now.day - 1) * SECONDS_PER_DAY
        return tx_unix >= month_first

    if scope == TransactionEditScope.this_year_or_later:
        day_of_year = server_now.timetuple().tm_yday
        year_first = client_today_first - (day_of_year - 1) * SECONDS_PER_DAY
        return tx_unix >= year_first

    return False


def is_editable(
    scope: TransactionEditScope,
    transaction: Transaction,
    account: Optional[Account],
    related_account: Optional[Account],
    now: datetime,
    utc_offset: int,
    first_day_of_week: int = 0,
    server_zone: tzinfo = timezone.utc,
) -> bool:
    """Edit-window check plus the rule that hidden accounts freeze their rows."""
    if not can_edit(
        scope,
        transaction.transaction_time,
        now,
        utc_offset,
        first_day_of_week,
        server_zone,
    ):
        return False
    if account is None or account.hidden:
        return False
    if transaction.type == TransactionRowType.transfer_out:
        if related_account is None or related_account.hidden:
            return False
    return True
