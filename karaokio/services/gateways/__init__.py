"""Collaborator gateways: acquisition sources and the media transform service."""
from karaokio.services.gateways.acquisition import (
    CatalogSource,
    KaraokeVideoSource,
    UploadsSource,
    build_acquisition_gateway,
)
from karaokio.services.gateways.base import (
    AcquisitionCandidate,
    AcquisitionConstraints,
    AcquisitionGateway,
    AcquisitionSource,
    BaseVideo,
    BaseVideoSource,
    MediaTransformGateway,
    ProgressCallback,
)
from karaokio.services.gateways.http_client import GatewayError, ServiceClient
from karaokio.services.gateways.media import HttpMediaTransformClient, build_media_gateway

__all__ = [
    "AcquisitionCandidate",
    "AcquisitionConstraints",
    "AcquisitionGateway",
    "AcquisitionSource",
    "BaseVideo",
    "BaseVideoSource",
    "CatalogSource",
    "GatewayError",
    "HttpMediaTransformClient",
    "KaraokeVideoSource",
    "MediaTransformGateway",
    "ProgressCallback",
    "ServiceClient",
    "UploadsSource",
    "build_acquisition_gateway",
    "build_media_gateway",
]
