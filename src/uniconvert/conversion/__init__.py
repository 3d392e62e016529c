"""
Domain layer for relaying file conversions to an external provider.
Provides interfaces (gateways), the polling combinator and the relay that
drives a provider job from creation to a downloadable artifact, so the HTTP
front-end only has to stage the upload and stream the result.
"""

from .interfaces import (
    ConversionJob,
    ConversionProvider,
    ConversionRequest,
    ConvertedArtifact,
    JobStage,
    PollBudget,
    ResultFile,
    ScratchGateway,
    StagedUpload,
    UploadTarget,
)
from .errors import RelayError
from .polling import PollTimeout, poll_until
from .service import COMPLETION_BUDGET, UPLOAD_TARGET_BUDGET, ConversionRelay
