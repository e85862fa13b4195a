import jwt
import logging
from dbstarter.local.errors import StarterError

log = logging.getLogger(__name__)

JWT_ISSUER = "arangodb"
JWT_ALGORITHM = "HS256"


class JWTCreationError(StarterError):
    """Raised when a token cannot be signed."""


def create_jwt_authorization_header(jwt_secret: str) -> str:
    """
    Calculates a JWT authorization header for requests to a database server,
    based on the given secret.

    :param jwt_secret: The shared secret. If empty, no header is needed.
    :return: The header value ("bearer <token>"), or an empty string when no secret is set.
    """
    if not jwt_secret:
        return ""
    try:
        token = jwt.encode({"iss": JWT_ISSUER, "server_id": "foo"}, jwt_secret, algorithm=JWT_ALGORITHM)
    except (jwt.PyJWTError, TypeError, ValueError) as e:
        raise JWTCreationError(f"Failed to sign JWT token: {e}") from e
    # PyJWT < 2.0 returns bytes.
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return "bearer " + token
