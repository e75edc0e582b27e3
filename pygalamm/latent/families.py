"""
Response family and link function specifications.

Only canonical links are supported, so every family is a natural
exponential family in the linear predictor η:

    log p(y | η) = τ · (y η - k c(η)) + const(y, τ)

where k is the number of trials (1 except for the binomial) and τ a
precision multiplier (residual weights over dispersion for the Gaussian,
1 otherwise). Each Family bundles the cumulant c and its derivatives,
which give the mean, the IRLS working weights and the third-order terms
needed to differentiate the Laplace approximation.

Each Link defines:
- g(μ) → η  (link)
- g⁻¹(η) → μ  (inverse link)
- dμ/dη  (derivative of inverse link)

References:
    McCullagh, P., & Nelder, J. A. (1989). Generalized Linear Models (2nd ed.)
    R Core Team. stats::family, stats::make.link
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import numpy as np
from numpy.typing import NDArray
from scipy.special import expit, gammaln

from pygalamm.core.exceptions import ConfigurationError

# exp() overflows above ~709
_MAX_ETA = 700.0


# =====================================================================
# Link functions
# =====================================================================

class Link(ABC):
    """Abstract link function g(μ) mapping mean to linear predictor."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def link(self, mu: NDArray) -> NDArray:
        """g(μ) → η."""
        ...

    @abstractmethod
    def linkinv(self, eta: NDArray) -> NDArray:
        """g⁻¹(η) → μ."""
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


class IdentityLink(Link):
    """Identity link: g(μ) = μ. Canonical for Gaussian."""

    @property
    def name(self) -> str:
        return 'identity'

    def link(self, mu: NDArray) -> NDArray:
        return np.array(mu, dtype=np.float64)

    def linkinv(self, eta: NDArray) -> NDArray:
        return np.array(eta, dtype=np.float64)


class LogitLink(Link):
    """Logit link: g(μ) = log(μ/(1-μ)). Canonical for Binomial."""

    @property
    def name(self) -> str:
        return 'logit'

    def link(self, mu: NDArray) -> NDArray:
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        return np.log(mu / (1 - mu))

    def linkinv(self, eta: NDArray) -> NDArray:
        return expit(eta)


class LogLink(Link):
    """Log link: g(μ) = log(μ). Canonical for Poisson."""

    @property
    def name(self) -> str:
        return 'log'

    def link(self, mu: NDArray) -> NDArray:
        return np.log(np.maximum(mu, 1e-10))

    def linkinv(self, eta: NDArray) -> NDArray:
        return np.exp(np.minimum(eta, _MAX_ETA))


# =====================================================================
# Family base class
# =====================================================================

class Family(ABC):
    """
    Response family with its canonical link.

    Subclasses implement the cumulant derivatives; everything the inner
    solver and the likelihood engine need is derived from them.
    """

    def __init__(self, link: str | None = None):
        canonical = self._canonical_link()
        if link is not None and link != canonical.name:
            raise ConfigurationError(
                f"Only the canonical link is supported for the "
                f"{self.name} family: expected {canonical.name!r}, "
                f"got {link!r}"
            )
        self._link = canonical

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def _canonical_link(self) -> Link:
        ...

    @property
    def link(self) -> Link:
        return self._link

    @property
    def has_dispersion(self) -> bool:
        """Whether the family carries an estimated dispersion parameter.

        True for Gaussian (φ = σ²). False for Binomial and Poisson (φ = 1).
        """
        return False

    @abstractmethod
    def cumulant_derivatives(
        self, eta: NDArray, trials: NDArray
    ) -> tuple[NDArray, NDArray, NDArray]:
        """Return (k c'(η), k c''(η), k c'''(η)).

        The first is the mean on the response (count) scale, the second
        the variance function on the same scale and the third its
        derivative with respect to η.
        """
        ...

    @abstractmethod
    def log_density(
        self, y: NDArray, eta: NDArray, trials: NDArray, precision: NDArray
    ) -> NDArray:
        """Per-observation log density, including normalizing constants."""
        ...

    @abstractmethod
    def dev_resids(self, y: NDArray, mu: NDArray, trials: NDArray) -> NDArray:
        """Unit deviances for y on the proportion scale (y / trials).

        Matches R's family$dev.resids(y, mu, wt) with wt = trials.
        """
        ...

    @abstractmethod
    def variance(self, mu: NDArray, trials: NDArray) -> NDArray:
        """Variance of y / trials at mean μ."""
        ...

    @abstractmethod
    def initialize(self, y: NDArray, trials: NDArray) -> NDArray:
        """Starting linear predictor for IRLS, in the valid link range."""
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(link={self._link.name!r})"


# =====================================================================
# Concrete families
# =====================================================================

class Gaussian(Family):
    """Gaussian family, identity link.

    c(η) = η²/2, so the mean is η, the variance function 1 and the third
    derivative 0. The precision τ = w / σ² carries heteroscedastic
    residual weights.
    """

    @property
    def name(self) -> str:
        return 'gaussian'

    def _canonical_link(self) -> Link:
        return IdentityLink()

    @property
    def has_dispersion(self) -> bool:
        return True

    def cumulant_derivatives(self, eta, trials):
        return eta.copy(), np.ones_like(eta), np.zeros_like(eta)

    def log_density(self, y, eta, trials, precision):
        return (-0.5 * precision * (y - eta) ** 2
                + 0.5 * np.log(precision / (2.0 * np.pi)))

    def dev_resids(self, y, mu, trials):
        return trials * (y - mu) ** 2

    def variance(self, mu, trials):
        return np.ones_like(mu, dtype=np.float64)

    def initialize(self, y, trials):
        return np.array(y, dtype=np.float64)


class Binomial(Family):
    """Binomial family, logit link.

    y counts successes out of k trials. c(η) = log(1 + e^η).
    """

    @property
    def name(self) -> str:
        return 'binomial'

    def _canonical_link(self) -> Link:
        return LogitLink()

    def cumulant_derivatives(self, eta, trials):
        p = expit(eta)
        v = p * (1.0 - p)
        return trials * p, trials * v, trials * v * (1.0 - 2.0 * p)

    def log_density(self, y, eta, trials, precision):
        log_choose = gammaln(trials + 1) - gammaln(y + 1) - gammaln(trials - y + 1)
        return precision * (y * eta - trials * np.logaddexp(0.0, eta)) + log_choose

    def dev_resids(self, y, mu, trials):
        mu = np.clip(mu, 1e-10, 1 - 1e-10)
        # 0*log(0) = 0; np.where evaluates both branches
        with np.errstate(divide='ignore', invalid='ignore'):
            term1 = np.where(y > 0, y * np.log(y / mu), 0.0)
            term2 = np.where(y < 1, (1 - y) * np.log((1 - y) / (1 - mu)), 0.0)
        return 2.0 * trials * (term1 + term2)

    def variance(self, mu, trials):
        return mu * (1.0 - mu) / trials

    def initialize(self, y, trials):
        return self.link.link((y + 0.5) / (trials + 1.0))


class Poisson(Family):
    """Poisson family, log link. c(η) = e^η."""

    @property
    def name(self) -> str:
        return 'poisson'

    def _canonical_link(self) -> Link:
        return LogLink()

    def cumulant_derivatives(self, eta, trials):
        mu = np.exp(np.minimum(eta, _MAX_ETA))
        return mu, mu.copy(), mu.copy()

    def log_density(self, y, eta, trials, precision):
        mu = np.exp(np.minimum(eta, _MAX_ETA))
        return precision * (y * eta - mu) - gammaln(y + 1)

    def dev_resids(self, y, mu, trials):
        mu = np.maximum(mu, 1e-10)
        with np.errstate(divide='ignore', invalid='ignore'):
            term = np.where(y > 0, y * np.log(y / mu), 0.0)
        return 2.0 * trials * (term - (y - mu))

    def variance(self, mu, trials):
        return np.array(mu, dtype=np.float64)

    def initialize(self, y, trials):
        return np.log(np.maximum(y, 0.1))


# =====================================================================
# Family name → class mapping + resolver
# =====================================================================

_FAMILY_CLASSES: dict[str, type[Family]] = {
    'gaussian': Gaussian,
    'normal': Gaussian,
    'binomial': Binomial,
    'poisson': Poisson,
}


def resolve_family(family: str | Family) -> Family:
    """Resolve a family argument to a Family instance.

    Args:
        family: Either a name ('gaussian', 'binomial', 'poisson') or a
            Family instance (passed through).

    Returns:
        Family instance.

    Raises:
        ConfigurationError: If the name is not recognized or the argument
            is neither a string nor a Family.
    """
    if isinstance(family, Family):
        return family
    if isinstance(family, str):
        cls = _FAMILY_CLASSES.get(family.lower())
        if cls is None:
            valid = ', '.join(
                sorted(k for k in _FAMILY_CLASSES.keys() if k != 'normal')
            )
            raise ConfigurationError(
                f"Unknown family: {family!r}. Valid families: {valid}"
            )
        return cls()
    raise ConfigurationError(
        f"family must be str or Family, got {type(family).__name__}"
    )
