"""
Stochastic compartmental models and parameter handling.
"""

from epinfer.models.parameters import ParameterSpace, ParameterVector, TRANSFORMS
from epinfer.models.base import ProcessModel, MeasurementModel
from epinfer.models.ssm_sir import SIRModel, TransmissionSchedule
from epinfer.models.ssm_seir import SEIRModel
from epinfer.models.measurement import BinomialMeasurement, NormalMeasurement

__all__ = [
    'ParameterSpace', 'ParameterVector', 'TRANSFORMS',
    'ProcessModel', 'MeasurementModel',
    'SIRModel', 'SEIRModel', 'TransmissionSchedule',
    'BinomialMeasurement', 'NormalMeasurement',
]
