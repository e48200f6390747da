"""Black-Litterman posterior returns for VPP asset portfolios.

Combines equilibrium returns implied by the market (current allocation)
weights with analyst views on individual assets expressed via P/Q matrices.

High-confidence views get a tight view distribution (small Omega); a view
with confidence near zero barely moves the posterior away from equilibrium.

References:
    - Black & Litterman (1992): "Global Portfolio Optimization"
    - Idzorek (2004): "A Step-by-Step Guide to the Black-Litterman Model"
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import numpy as np
import structlog

from vpp_analytics.core.exceptions import InputValidationError

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class BlackLittermanConfig:
    """Configuration for the Black-Litterman model.

    Attributes:
        risk_aversion: Market risk aversion parameter (delta).
        tau: Scaling factor for uncertainty in equilibrium.
            Small values (0.01-0.10) reflect high confidence in equilibrium.
        default_view_confidence: Confidence used when a view omits one.
    """

    risk_aversion: float = 2.5
    tau: float = 0.05
    default_view_confidence: float = 0.5


# ---------------------------------------------------------------------------
# Asset View
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class AssetView:
    """An absolute view on one asset's expected return.

    Attributes:
        asset_id: Target asset identifier.
        expected_return: Viewed expected return.
        confidence: Confidence in [0, 1].
        source: Who expressed the view.
    """

    asset_id: str
    expected_return: float
    confidence: float = 0.5
    source: str = "analyst"


def parse_views(
    views: Iterable[AssetView | Mapping[str, Any]] | None,
    default_confidence: float = 0.5,
) -> list[AssetView]:
    """Accept AssetView objects or ``{asset_id, expected_return, confidence}`` dicts."""
    parsed: list[AssetView] = []
    for view in views or []:
        if isinstance(view, AssetView):
            parsed.append(view)
            continue
        try:
            parsed.append(
                AssetView(
                    asset_id=str(view["asset_id"]),
                    expected_return=float(view["expected_return"]),
                    confidence=float(view.get("confidence", default_confidence)),
                    source=str(view.get("source", "analyst")),
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InputValidationError(f"Malformed view {view!r}") from exc
    return parsed


# ---------------------------------------------------------------------------
# Black-Litterman Model
# ---------------------------------------------------------------------------
class BlackLitterman:
    """Black-Litterman model combining equilibrium returns with asset views.

    1. Equilibrium excess returns from market weights: pi = delta * Sigma * w_mkt.
    2. P (pick), Q (view return) and Omega (uncertainty) from the views.
    3. Posterior returns via the closed-form BL formula.

    Args:
        config: BlackLittermanConfig. Uses defaults if None.
    """

    def __init__(self, config: BlackLittermanConfig | None = None) -> None:
        self.config = config or BlackLittermanConfig()

    def compute_equilibrium_returns(
        self,
        covariance: np.ndarray,
        market_weights: np.ndarray,
    ) -> np.ndarray:
        """Implied equilibrium returns ``pi = delta * Sigma * w_mkt``.

        Raises:
            InputValidationError: *market_weights* is not one finite weight
                per asset.
        """
        covariance = np.asarray(covariance, dtype=np.float64)
        market_weights = np.asarray(market_weights, dtype=np.float64).reshape(-1)
        if market_weights.shape[0] != covariance.shape[0]:
            raise InputValidationError(
                f"market_weights has {market_weights.shape[0]} entries for "
                f"{covariance.shape[0]} assets"
            )
        if not np.all(np.isfinite(market_weights)):
            raise InputValidationError("market_weights must be finite")
        return self.config.risk_aversion * covariance @ market_weights

    def build_views(
        self,
        views: list[AssetView],
        asset_ids: list[str],
        covariance: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Build P, Q and Omega from absolute asset views.

        Views on unknown assets are skipped. Omega is diagonal:
            Omega_ii = 1 / (conf_i + epsilon) * tau * (p_i @ Sigma @ p_i)
        floored at a tiny positive value so it stays invertible.

        Returns:
            (P, Q, Omega) with shapes (k x n), (k,), (k x k).
        """
        epsilon = 1e-6
        tau = self.config.tau
        name_to_idx = {name: i for i, name in enumerate(asset_ids)}

        known = []
        for view in views:
            if view.asset_id not in name_to_idx:
                logger.warning(
                    "view_asset_not_found",
                    asset_id=view.asset_id,
                    available=asset_ids,
                )
                continue
            known.append(view)

        k, n = len(known), len(asset_ids)
        P = np.zeros((k, n), dtype=np.float64)
        Q = np.zeros(k, dtype=np.float64)
        omega_diag = np.zeros(k, dtype=np.float64)

        for i, view in enumerate(known):
            P[i, name_to_idx[view.asset_id]] = 1.0
            Q[i] = view.expected_return
            conf = min(max(view.confidence, 0.0), 1.0)
            view_var = float(P[i] @ covariance @ P[i])
            omega_diag[i] = max((1.0 / (conf + epsilon)) * tau * view_var, 1e-12)

        logger.info(
            "views_built",
            n_views=k,
            avg_omega=round(float(omega_diag.mean()), 6) if k > 0 else 0.0,
        )
        return P, Q, np.diag(omega_diag)

    def posterior_returns(
        self,
        equilibrium: np.ndarray,
        covariance: np.ndarray,
        P: np.ndarray,
        Q: np.ndarray,
        Omega: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Posterior mean and covariance of expected returns.

        Posterior mean:
            mu_BL = inv(inv(tau*Sigma) + P^T Omega^-1 P) @
                    (inv(tau*Sigma) @ pi + P^T Omega^-1 Q)

        Posterior covariance of the mean:
            M = inv(inv(tau*Sigma) + P^T Omega^-1 P)

        The pseudo-inverse of tau*Sigma is used so singular covariance
        matrices (perfectly correlated assets) are accepted.
        """
        equilibrium = np.asarray(equilibrium, dtype=np.float64)
        covariance = np.asarray(covariance, dtype=np.float64)

        tau_sigma_inv = np.linalg.pinv(self.config.tau * covariance)
        omega_inv = np.linalg.inv(np.asarray(Omega, dtype=np.float64))

        posterior_sigma = np.linalg.pinv(tau_sigma_inv + P.T @ omega_inv @ P)
        posterior_mu = posterior_sigma @ (tau_sigma_inv @ equilibrium + P.T @ omega_inv @ Q)
        return posterior_mu, posterior_sigma

    def posterior(
        self,
        views: list[AssetView],
        covariance: np.ndarray,
        market_weights: np.ndarray,
        asset_ids: list[str],
    ) -> tuple[np.ndarray, np.ndarray]:
        """Full pipeline: equilibrium -> views -> posterior.

        Returns:
            (expected_returns, covariance) to feed a mean-variance optimizer.
            The covariance is ``Sigma + M`` (asset covariance plus the
            uncertainty of the posterior mean); without views it is
            ``Sigma`` and the returns are the equilibrium returns.
        """
        covariance = np.asarray(covariance, dtype=np.float64)
        equilibrium = self.compute_equilibrium_returns(covariance, market_weights)

        P, Q, Omega = self.build_views(views, asset_ids, covariance)
        if len(Q) == 0:
            logger.info("no_views_provided", returning="equilibrium")
            return equilibrium, covariance

        posterior_mu, posterior_sigma = self.posterior_returns(
            equilibrium, covariance, P, Q, Omega
        )
        logger.info(
            "black_litterman_complete",
            n_assets=len(asset_ids),
            n_views=len(Q),
        )
        return posterior_mu, covariance + posterior_sigma
