"""Model definition: hierarchical mixing model log-posterior"""

from .mixing_model import MixingModel, MixingState, softmax

__all__ = ['MixingModel', 'MixingState', 'softmax']
