"""Identity for incoming requests. Every caller is the anonymous user."""

from chatrelay.models.chat import AuthUser

ANONYMOUS_USER_ID = "anonymous-user-id"


async def anonymous_user() -> AuthUser:
    return AuthUser(
        id=ANONYMOUS_USER_ID,
        user_id=ANONYMOUS_USER_ID,
        email="anonymous@example.com",
        role="user",
    )
