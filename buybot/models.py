# buybot/models.py
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple


@dataclass
class TransferRecord:
    signature: str
    kind: str                      # buy|sell|transfer|other
    token_amount: float = 0.0
    sol_amount: float = 0.0
    buyer: Optional[str] = None
    block_time: Optional[datetime] = None


@dataclass
class BuyEvent:
    signature: str
    amount: float                  # USD
    timestamp: datetime
    buyer: Optional[str] = None
    token_amount: Optional[float] = None
    sol_amount: Optional[float] = None


@dataclass
class MarketSnapshot:
    price_usd: float = 0.0
    market_cap_usd: float = 0.0
    liquidity_usd: float = 0.0
    volume_24h_usd: float = 0.0
    token_name: str = ""
    token_symbol: str = ""
    quote_token_symbol: str = ""
    price_native: float = 0.0
    pair_url: str = ""


@dataclass
class Notification:
    text: str
    image: Optional[str] = None
    buttons: Tuple[Tuple[str, str], ...] = ()   # (label, url)


@dataclass
class DeliveryReport:
    sent: int = 0
    failed: List[Tuple[int, Exception]] = field(default_factory=list)
