from dataclasses import dataclass, field
from typing import Dict, Any, Optional

@dataclass
class AppState:
    db_path: str
    channel_id: Optional[int] = None        # restrict commands to this channel (None = anywhere)
    trade_timeout_s: int = 24 * 60 * 60     # 0 disables expiry of abandoned trades
    cfg: Dict[str, Any] = field(default_factory=dict)
