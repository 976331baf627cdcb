from enum import Enum


class Environment(str, Enum):
    """Deployment environments a process can run in."""

    PRODUCTION = "production"
    STAGING = "staging"
    TESTING = "testing"
    DEVELOPMENT = "development"

    @classmethod
    def parse(cls, env: str) -> "Environment":
        """Map a configured environment name onto a member, defaulting to production."""
        try:
            return cls(env.strip().lower())
        except ValueError:
            return cls.PRODUCTION

    @classmethod
    def is_development(cls, env: str) -> bool:
        """Check if environment is development"""
        return cls.parse(env) is cls.DEVELOPMENT
