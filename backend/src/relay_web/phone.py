from __future__ import annotations

from typing import Iterable, TypeVar

from .directory import ClientContactRecord

ClientT = TypeVar("ClientT", bound=ClientContactRecord)


def normalize_phone(value: str) -> str:
    """Canonical digit-only form used for equality checks, never for display."""
    digits = "".join(ch for ch in value if ch.isdigit())
    if len(digits) == 10:
        return f"1{digits}"
    return digits


def format_phone_for_display(value: str) -> str:
    digits = normalize_phone(value)
    if len(digits) == 11 and digits.startswith("1"):
        return f"+1 ({digits[1:4]}) {digits[4:7]}-{digits[7:11]}"
    return value


def find_client_by_phone(phone: str, clients: Iterable[ClientT]) -> ClientT | None:
    incoming = normalize_phone(phone)
    if not incoming:
        return None
    for client in clients:
        if not client.phone:
            continue
        if normalize_phone(client.phone) == incoming:
            return client
    return None
