"""
AWS Signature Version 4 - Header Signing for Web Clients

This package computes SigV4 authentication headers for outgoing HTTP requests
(API Gateway, S3 and other AWS-compatible APIs) without depending on an AWS SDK.
"""

import logging

from .exceptions import RequestError, SignerConfigError, SigningError
from .hashing import Hasher, Sha256Hasher
from .payload import json_payload_serializer
from .sigv4 import (
    UNSIGNED_PAYLOAD,
    Headers,
    PreparedRequest,
    Request,
    Service,
    SignerConfig,
    SigV4Signer,
    amz_date,
)

__version__ = "0.1.0"
__all__ = [
    "SigV4Signer",
    "SignerConfig",
    "Request",
    "PreparedRequest",
    "UNSIGNED_PAYLOAD",
    "Service",
    "Headers",
    "Hasher",
    "Sha256Hasher",
    "json_payload_serializer",
    "amz_date",
    "SigningError",
    "SignerConfigError",
    "RequestError",
]

logging.getLogger(__name__).addHandler(logging.NullHandler())
