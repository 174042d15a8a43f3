"""Base exception classes for mlstudio error handling"""


class MLStudioException(Exception):
    """Base exception for all mlstudio errors"""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(MLStudioException):
    """Raised when configuration is invalid or missing"""
    pass


class ValidationError(MLStudioException):
    """Raised when user input fails validation"""
    pass


class WorkspaceError(MLStudioException):
    """Raised when a workspace cannot be created or loaded"""
    pass


class WorkspaceNotFoundError(WorkspaceError):
    """Raised when a workspace or its config file does not exist"""
    pass


class DatasetNotFoundError(MLStudioException):
    """Raised when a dataset name or version is not registered"""
    pass


class DatasetRegistrationError(MLStudioException):
    """Raised when dataset registration fails"""
    pass


class ComputeNotFoundError(MLStudioException):
    """Raised when a compute target does not exist"""
    pass


class ComputeProvisioningError(MLStudioException):
    """Raised when a compute target cannot be provisioned"""
    pass


class EnvironmentBuildError(MLStudioException):
    """Raised when a run environment's requirements are not satisfied"""
    pass


class RunNotFoundError(MLStudioException):
    """Raised when a run id is unknown"""
    pass


class RunStateError(MLStudioException):
    """Raised on an invalid run status transition or operation"""
    pass


class RunFailedError(MLStudioException):
    """Raised when waiting on a run that ended in Failed"""
    pass


class RunTimeoutError(MLStudioException):
    """Raised when a run or iteration exceeds its time limit"""
    pass


class ModelNotFoundError(MLStudioException):
    """Raised when a model is not found in the registry"""
    pass


class ModelRegistrationError(MLStudioException):
    """Raised when model registration fails"""
    pass


class SweepConfigurationError(MLStudioException):
    """Raised when a hyperparameter sweep is misconfigured"""
    pass


class AutoMLConfigurationError(MLStudioException):
    """Raised when an automated model search is misconfigured"""
    pass


class PipelineValidationError(MLStudioException):
    """Raised when a pipeline graph is invalid"""
    pass


class PipelineRunError(MLStudioException):
    """Raised when a pipeline run cannot be executed"""
    pass


class PipelineNotFoundError(MLStudioException):
    """Raised when a published pipeline is not found"""
    pass
