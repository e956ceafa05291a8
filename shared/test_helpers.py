"""
Test helper functions and factory methods for Tracker Studio.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt

DEFAULT_TEST_SECRET = "local-dev-secret"


class TestDataFactory:
    """Factory for creating test data."""

    @staticmethod
    def sleep_tracker_schema() -> List[Dict[str, Any]]:
        """Field schema of a typical sleep tracker."""
        return [
            {
                "id": "hours",
                "label": "Hours slept",
                "type": "number",
                "validation": {"required": True, "min": 0, "max": 24},
                "unit": "h"
            },
            {
                "id": "quality",
                "label": "Sleep quality",
                "type": "rating",
                "validation": {"min": 1, "max": 5}
            },
            {
                "id": "woke_rested",
                "label": "Woke up rested",
                "type": "boolean",
                "default": False
            },
            {
                "id": "dream",
                "label": "Dream notes",
                "type": "text",
                "validation": {"max_length": 200}
            }
        ]

    @staticmethod
    def mood_tracker_schema() -> List[Dict[str, Any]]:
        """Field schema with a single required rating."""
        return [
            {
                "id": "mood",
                "label": "Mood",
                "type": "rating",
                "validation": {"required": True}
            }
        ]

    @staticmethod
    def all_field_types_schema() -> List[Dict[str, Any]]:
        """One field of every supported type."""
        return [
            {"id": "note", "label": "Note", "type": "text"},
            {"id": "count", "label": "Count", "type": "number"},
            {"id": "done", "label": "Done", "type": "boolean"},
            {"id": "score", "label": "Score", "type": "rating"},
            {"id": "when", "label": "When", "type": "date"}
        ]

    @staticmethod
    def sleep_entries() -> List[Dict[str, Any]]:
        """A week of sleep entries."""
        return [
            {"entry_date": "2024-03-04", "field_values": {"hours": 7, "quality": 4}},
            {"entry_date": "2024-03-05", "field_values": {"hours": 6.5, "quality": 3}},
            {"entry_date": "2024-03-06", "field_values": {"hours": 8, "quality": 5, "woke_rested": True}},
            {"entry_date": "2024-03-07", "field_values": {"hours": 5, "quality": 2}},
            {"entry_date": "2024-03-08", "field_values": {"hours": 7.5, "quality": 4}},
        ]


class MockTokenGenerator:
    """Generate shared-secret JWTs for testing."""

    def __init__(self, secret: str = DEFAULT_TEST_SECRET, algorithm: str = "HS256"):
        self.secret = secret
        self.algorithm = algorithm

    def generate_access_token(self, principal_id: str, expires_in: int = 3600,
                              audience: Optional[str] = None, **claims) -> str:
        """Generate access token for a principal."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": principal_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
            **claims
        }
        if audience is not None:
            payload["aud"] = audience

        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def auth_headers(self, principal_id: str, **kwargs) -> Dict[str, str]:
        """Authorization header for a principal."""
        return {"Authorization": f"Bearer {self.generate_access_token(principal_id, **kwargs)}"}


def create_mock_jwt_token(principal_id: str, secret: str = DEFAULT_TEST_SECRET, expires_in: int = 3600) -> str:
    """Create a signed token whose subject is ``principal_id``."""
    return MockTokenGenerator(secret).generate_access_token(principal_id, expires_in=expires_in)


# Global instances for easy access
test_data_factory = TestDataFactory()
mock_token_generator = MockTokenGenerator()
