from .reward_service import (
    RewardClientError,
    RewardNotRegistered,
    RewardRateLimited,
    RewardResult,
    RewardServiceClient,
    RewardSuccess,
    RewardTransientError,
)

__all__ = [
    "RewardServiceClient",
    "RewardResult",
    "RewardSuccess",
    "RewardNotRegistered",
    "RewardRateLimited",
    "RewardTransientError",
    "RewardClientError",
]
