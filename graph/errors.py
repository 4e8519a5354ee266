from typing import Dict, List


class RoutingExhausted(Exception):
    """Every candidate in the fallback chain was skipped or failed."""

    def __init__(self, attempts: List[Dict[str, str]]):
        super().__init__("no backend available")
        self.attempts = attempts

    def to_dict(self) -> Dict:
        return {"error": "no backend available", "attempts": self.attempts}
