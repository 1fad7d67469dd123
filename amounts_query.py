"""Encoding of the multi-range amounts request.

The request packs named windows as ``label_start_end`` items joined by
``|``, for example ``thisMonth_1714521600_1717199999|lastMonth_...``.
"""

from dataclasses import dataclass

from errors import InvalidRequest

ITEM_SEPARATOR = "|"
FIELD_SEPARATOR = "_"


@dataclass(frozen=True)
class AmountsQueryItem:
    name: str
    start_time: int
    end_time: int


def parse_amounts_query(query: str) -> list[AmountsQueryItem]:
    items: list[AmountsQueryItem] = []
    for raw in query.split(ITEM_SEPARATOR):
        raw = raw.strip()
        if not raw:
            continue
        parts = raw.split(FIELD_SEPARATOR)
        if len(parts) != 3 or not parts[0]:
            raise InvalidRequest(f"Invalid amounts query item: {raw!r}")
        try:
            start_time, end_time = int(parts[1]), int(parts[2])
        except ValueError as exc:
            raise InvalidRequest(f"Invalid amounts query item: {raw!r}") from exc
        items.append(AmountsQueryItem(parts[0], start_time, end_time))
    return items


def encode_amounts_query(items: list[AmountsQueryItem]) -> str:
    return ITEM_SEPARATOR.join(
        f"{item.name}{FIELD_SEPARATOR}{item.start_time}{FIELD_SEPARATOR}{item.end_time}"
        for item in items
    )
