from .aave import (
    AaveLendRequest,
    AaveRewardsRequest,
    build_aave_lend_action,
    build_aave_rewards_claim_action,
    build_aave_rewards_compound_action,
)
from .approvals import ApprovalRequest, build_approval_action
from .morpho import MorphoLendRequest, build_morpho_lend_action

__all__ = [
    "AaveLendRequest",
    "AaveRewardsRequest",
    "ApprovalRequest",
    "MorphoLendRequest",
    "build_aave_lend_action",
    "build_aave_rewards_claim_action",
    "build_aave_rewards_compound_action",
    "build_approval_action",
    "build_morpho_lend_action",
]
