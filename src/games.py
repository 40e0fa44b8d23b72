"""
Static minigame catalog served alongside the telemetry endpoints.
"""

import time
import uuid
from typing import Any, Dict, List, Optional

GAMES: Dict[str, Dict[str, Any]] = {
    "fortune-wheel": {
        "id": "fortune-wheel",
        "name": "Fortune Wheel",
        "description": "Spin the wheel to win prizes",
        "type": "luck",
        "status": "active",
        "rules": [
            "Each spin costs 1 coin",
            "Wheel has 8 different prize slots",
            "Higher rarity prizes have lower probability",
        ],
        "rewards": [
            "Common: 5 coins",
            "Uncommon: 15 coins",
            "Rare: 50 coins",
            "Epic: 100 coins",
            "Legendary: 500 coins",
        ],
    },
    "loot-box": {
        "id": "loot-box",
        "name": "Loot Box",
        "description": "Open boxes to get random items",
        "type": "luck",
        "status": "active",
        "rules": [
            "Each box costs 10 coins",
            "Boxes contain 3-5 random items",
            "Item rarity affects drop rates",
        ],
        "rewards": [
            "Common items: 60% chance",
            "Uncommon items: 25% chance",
            "Rare items: 10% chance",
            "Epic items: 4% chance",
            "Legendary items: 1% chance",
        ],
    },
    "puzzle-game": {
        "id": "puzzle-game",
        "name": "Puzzle Game",
        "description": "Solve puzzles to progress",
        "type": "skill",
        "status": "coming-soon",
    },
}

SUMMARY_FIELDS = ("id", "name", "description", "type", "status")


def list_games() -> List[Dict[str, Any]]:
    return [{field: game[field] for field in SUMMARY_FIELDS} for game in GAMES.values()]


def get_game(game_id: str) -> Optional[Dict[str, Any]]:
    """Full details for playable games only."""
    game = GAMES.get(game_id)
    if game is None or "rules" not in game:
        return None
    return game


def new_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
