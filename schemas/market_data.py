"""
Market Data Types

Core value types flowing through the imbalance bar pipeline.
These types are used for NATS messaging and TimescaleDB persistence.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Union
import json

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictBool, ValidationError

from dataflow.errors import DecodeError


class TradeMessage(BaseModel):
    """Trade message as delivered by the venue's trade stream"""
    model_config = ConfigDict(extra="ignore")

    # Price and quantity arrive as decimal strings
    price: Decimal = Field(gt=0, validation_alias=AliasChoices("p", "price"))
    quantity: Decimal = Field(gt=0, validation_alias=AliasChoices("q", "quantity"))
    timestamp: int = Field(validation_alias=AliasChoices("T", "timestamp"))
    is_buyer_maker: StrictBool = Field(
        validation_alias=AliasChoices("m", "isBuyerMaker", "is_buyer_maker")
    )


@dataclass(frozen=True)
class Trade:
    """Single executed trade from the venue feed"""
    price: float
    quantity: float
    timestamp: int  # venue epoch millis, not guaranteed monotonic
    is_buyer_maker: bool  # True => resting buy order was hit by a seller

    @property
    def dollar_value(self) -> float:
        """Notional value of the trade"""
        return self.price * self.quantity

    @property
    def is_buy_initiated(self) -> bool:
        """Aggressor was the buyer"""
        return not self.is_buyer_maker

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "price": self.price,
            "quantity": self.quantity,
            "timestamp": self.timestamp,
            "is_buyer_maker": self.is_buyer_maker,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Trade":
        """Create Trade from dictionary"""
        return cls(
            price=float(data["price"]),
            quantity=float(data["quantity"]),
            timestamp=int(data["timestamp"]),
            is_buyer_maker=bool(data["is_buyer_maker"]),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Trade":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))

    @classmethod
    def from_feed_message(cls, raw: Union[str, bytes]) -> "Trade":
        """
        Decode a raw feed message into a Trade.

        Args:
            raw: JSON text (or UTF-8 bytes) of a single trade message

        Returns:
            Decoded Trade

        Raises:
            DecodeError: If the message is not a well-formed trade
        """
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            payload = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecodeError(f"Invalid trade message: {e}", raw) from e

        if not isinstance(payload, dict):
            raise DecodeError(
                f"Expected JSON object, got {type(payload).__name__}", raw
            )

        try:
            message = TradeMessage.model_validate(payload)
        except ValidationError as e:
            raise DecodeError(
                f"Invalid trade message: {e.error_count()} validation error(s)", raw
            ) from e

        return cls(
            price=float(message.price),
            quantity=float(message.quantity),
            timestamp=message.timestamp,
            is_buyer_maker=message.is_buyer_maker,
        )


@dataclass(frozen=True)
class Bar:
    """Dollar imbalance bar, emitted once per threshold crossing"""
    timestamp: int  # timestamp of the trade that triggered the crossing
    dollar_imbalance: float
    threshold_reached: bool = True

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "timestamp": self.timestamp,
            "dollar_imbalance": self.dollar_imbalance,
            "threshold_reached": self.threshold_reached,
        }

    def to_json(self) -> str:
        """Serialize to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict) -> "Bar":
        """Create Bar from dictionary"""
        return cls(
            timestamp=int(data["timestamp"]),
            dollar_imbalance=float(data["dollar_imbalance"]),
            threshold_reached=bool(data.get("threshold_reached", True)),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "Bar":
        """Deserialize from JSON string"""
        return cls.from_dict(json.loads(json_str))
