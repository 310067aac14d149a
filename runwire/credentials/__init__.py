from .materializer import CREDENTIAL_NOT_FOUND, CredentialMaterializer
from .oauth import OAuthTokenClient, is_oauth_body, merge_token_response, still_fresh

__all__ = [
    "CREDENTIAL_NOT_FOUND",
    "CredentialMaterializer",
    "OAuthTokenClient",
    "is_oauth_body",
    "merge_token_response",
    "still_fresh",
]
