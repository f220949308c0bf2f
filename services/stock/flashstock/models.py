"""
Stock Service — 値オブジェクト

引き当て記録・引き当て結果・レート制限の判定結果。
業務上の失敗は例外ではなくこれらのモデルで呼び出し元に返す。
"""

from pydantic import BaseModel, ConfigDict, Field

from .errors import ReservationFailure

USER_UNAVAILABLE_MESSAGE = "This item is no longer available in the requested quantity"


class ReservationRecord(BaseModel):
    """
    reservation:<id> に保存する引き当て記録

    他のサービスも同じストアを読むため、保存形式は camelCase を維持する。
    expires_at はエポックミリ秒。
    """

    model_config = ConfigDict(populate_by_name=True)

    reservation_id: str = Field(alias="reservationId")
    product_id: str = Field(alias="productId")
    quantity: int
    expires_at: int = Field(alias="expiresAt")

    def to_payload(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_payload(cls, payload: str) -> "ReservationRecord":
        return cls.model_validate_json(payload)


class ReservationResult(BaseModel):
    success: bool
    reservation_id: str | None = None
    reason: ReservationFailure | None = None

    @classmethod
    def ok(cls, reservation_id: str) -> "ReservationResult":
        return cls(success=True, reservation_id=reservation_id)

    @classmethod
    def failed(cls, reason: ReservationFailure) -> "ReservationResult":
        return cls(success=False, reason=reason)

    @property
    def user_message(self) -> str | None:
        """エンドユーザー向けの文言。在庫系の失敗は 1 つの文言にまとめる。"""
        if self.success:
            return None
        if self.reason in (
            ReservationFailure.INSUFFICIENT_STOCK,
            ReservationFailure.NO_LONGER_AVAILABLE,
        ):
            return USER_UNAVAILABLE_MESSAGE
        return self.reason.value if self.reason else None


class RateLimitDecision(BaseModel):
    allowed: bool
    remaining: int
    reset_in_seconds: int
