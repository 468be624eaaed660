from typing import Literal

from pydantic import BaseModel, field_validator

from app.schemas.market import canonical_symbol


class ClientCommand(BaseModel):
    type: Literal["subscribe", "unsubscribe"]
    symbol: str

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        symbol = canonical_symbol(value)
        if not symbol:
            raise ValueError("symbol must not be empty")
        return symbol
