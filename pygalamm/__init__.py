"""
pygalamm: generalized additive latent and mixed models for Python.

Maximum marginal likelihood estimation of mixed models whose linear
predictor combines fixed effects, random effects and latent factors
loading onto measured outcomes from different response families.

Submodules:
    core: Result envelope, exceptions, timing
    latent: Model structure, likelihood engine and fitting
"""

__version__ = "0.1.0"

from pygalamm import core
from pygalamm import latent
from pygalamm.latent import galamm, fit

__all__ = [
    "__version__",
    "core",
    "latent",
    "galamm",
    "fit",
]
