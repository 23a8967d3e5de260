"""Version information for simmr."""

__version__ = "0.1.0"
__author__ = "simmr contributors"
__email__ = "simmr@users.noreply.github.com"
__description__ = "Bayesian stable isotope mixing models with a self-contained MCMC engine"
__url__ = ""
