"""Workflow error taxonomy.

Every error is recoverable by the caller and leaves the store untouched.
Routes render them through ``api_response`` using ``status_code``.
"""


class WorkflowError(Exception):
    status_code = 400
    code = 'workflow_error'

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        data = {'code': self.code, 'message': self.message}
        if self.details:
            data['details'] = self.details
        return data


class ValidationError(WorkflowError):
    """Malformed or missing input."""
    status_code = 400
    code = 'validation_error'


class PermissionDeniedError(WorkflowError):
    """Actor lacks the role or company membership for the operation."""
    status_code = 403
    code = 'permission_denied'


class NotFoundError(WorkflowError):
    status_code = 404
    code = 'not_found'


class InvalidStateError(WorkflowError):
    """Operation is illegal for the current Asignacion/Evaluacion state."""
    status_code = 409
    code = 'invalid_state'


class DimensionYaAsignadaError(ValidationError):
    """Dimension already held by another active Asignacion.

    A ValidationError for callers that only distinguish bad input, but
    rendered as a conflict.
    """
    status_code = 409
    code = 'dimension_ya_asignada'


class EmptySurveyError(WorkflowError):
    status_code = 422
    code = 'empty_survey'
