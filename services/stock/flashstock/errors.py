"""
Stock Service — エラー定義

ストア(Redis)の一時的な障害は StoreError に一本化する。
業務上の失敗(在庫不足など)は例外ではなく戻り値で表現する。
"""

from enum import Enum


class StoreError(Exception):
    """Redis との通信に失敗した(接続断・タイムアウトなど)"""

    def __init__(self, operation: str, key: str | None = None) -> None:
        self.operation = operation
        self.key = key
        target = f" {key}" if key else ""
        super().__init__(f"store {operation}{target} failed")


class ReservationFailure(str, Enum):
    """在庫引き当て失敗の理由"""

    INSUFFICIENT_STOCK = "Insufficient stock"
    NO_LONGER_AVAILABLE = "Stock no longer available"
    DUPLICATE = "Reservation already exists"
    STORE_UNAVAILABLE = "Reservation failed"
