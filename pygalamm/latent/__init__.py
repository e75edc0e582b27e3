"""
Generalized latent-variable mixed models (GALAMM).

Public API:
    galamm()          : build and fit a model from grouping variables
    fit()             : fit a compiled ModelStructure
    ModelStructure    : validated numeric model structure
    GalammControl     : fit configuration
    GalammSolution    : result wrapper with inference accessors
    LoadingBlock      : loading template on design rows and columns
    FactorLoading     : loading template on named latent factors
    MarginalLikelihood: Laplace likelihood, gradient and Hessian engine
"""

from pygalamm.latent.families import (
    Family, Gaussian, Binomial, Poisson, resolve_family,
)
from pygalamm.latent._layout import ParameterLayout
from pygalamm.latent._loadings import (
    Zero, FixedValue, Parameter, LinearCombination,
    LoadingBlock, LoadingMapping, FactorLoading, build_loading_mapping,
)
from pygalamm.latent._random_effects import RandomTerms, parse_random_effects
from pygalamm.latent._control import GalammControl
from pygalamm.latent._marginal import MarginalLikelihood, EvaluationResult
from pygalamm.latent.design import ModelStructure
from pygalamm.latent.solvers import fit, galamm
from pygalamm.latent.solution import GalammSolution

__all__ = [
    "galamm",
    "fit",
    "ModelStructure",
    "GalammControl",
    "GalammSolution",
    "MarginalLikelihood",
    "EvaluationResult",
    "ParameterLayout",
    "RandomTerms",
    "parse_random_effects",
    # Families
    "Family",
    "Gaussian",
    "Binomial",
    "Poisson",
    "resolve_family",
    # Loadings
    "Zero",
    "FixedValue",
    "Parameter",
    "LinearCombination",
    "LoadingBlock",
    "LoadingMapping",
    "FactorLoading",
    "build_loading_mapping",
]
