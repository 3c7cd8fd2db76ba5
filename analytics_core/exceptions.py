"""
Error taxonomy for the analytics engine.

Definition and request errors reach the caller. Backend errors are recovered
by the engine's fallback and never leave ``AnalyticsEngine``.
"""


class AnalyticsError(Exception):
    """Base class for all analytics engine errors"""


class DefinitionError(AnalyticsError):
    """Funnel or cohort definition is malformed"""


class FunnelNotFoundError(AnalyticsError):
    """Funnel definition lookup failed"""

    def __init__(self, organization_id: str, funnel_id: str):
        self.organization_id = organization_id
        self.funnel_id = funnel_id
        super().__init__(f"Funnel {funnel_id} not found for organization {organization_id}")


class InvalidRequestError(AnalyticsError):
    """Request parameters cannot be interpreted"""


class BackendError(AnalyticsError):
    """A backend query failed, timed out or returned a malformed response"""

    def __init__(self, backend: str, message: str):
        self.backend = backend
        super().__init__(f"[{backend}] {message}")


class AnalysisNotImplementedError(AnalyticsError):
    """The requested analysis exists in the API but is not computed by this engine"""

    def __init__(self, analysis: str):
        self.analysis = analysis
        super().__init__(f"Analysis '{analysis}' is not implemented")
