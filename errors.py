#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Error types module
Failures raised by the registration engine and its drivers
"""


class RegistrationError(Exception):
    """Base class for registration failures"""


class RegistrationStepError(RegistrationError):
    """
    Failure inside one registration step.

    The ICP driver fills in ``iteration`` and ``n_active`` before the error
    leaves the step, so the message tells which step broke and on how many
    active points.
    """

    def __init__(self, message: str, iteration: int = None, n_active: int = None):
        super().__init__(message)
        self.message = message
        self.iteration = iteration
        self.n_active = n_active

    def with_step_info(self, iteration: int, n_active: int):
        self.iteration = iteration
        self.n_active = n_active
        return self

    def __str__(self):
        details = []
        if self.iteration is not None:
            details.append(f"iteration={self.iteration}")
        if self.n_active is not None:
            details.append(f"active_points={self.n_active}")
        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


class EmptyTargetError(RegistrationStepError):
    """Nearest neighbor query against a model without points"""


class UnderdeterminedTransformError(RegistrationStepError):
    """Too few or near-collinear correspondences to fix a rigid transform"""


class TransformSolverError(RegistrationStepError):
    """Numerical failure while solving for a rigid transform"""


class InvalidSelectionError(RegistrationStepError):
    """Selection filter that cannot be applied to the given model"""


class ModelLoadError(RegistrationError):
    """Model file could not be read or holds no points"""


class ConfigError(RegistrationError):
    """Malformed properties file or option value"""
