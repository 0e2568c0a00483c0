import hashlib
import hmac


class TokenSigner:
    """HMAC-SHA256 over "<sid>.<exp>", hex encoded."""

    __slots__ = ("_key",)

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._key = secret.encode("utf-8")

    def __repr__(self) -> str:
        return "TokenSigner(secret=***)"

    @staticmethod
    def message(sid: str, exp: int) -> bytes:
        return f"{sid}.{int(exp)}".encode("utf-8")

    def sign(self, sid: str, exp: int) -> str:
        return hmac.new(
            self._key, self.message(sid, exp), hashlib.sha256
        ).hexdigest()

    def verify(self, sid: str, exp: int, sig: str) -> bool:
        expected = self.sign(sid, exp).encode("ascii")
        try:
            supplied = sig.encode("ascii")
        except (AttributeError, UnicodeEncodeError):
            return False
        # compare_digest does not short-circuit on content and returns
        # False for unequal lengths
        return hmac.compare_digest(expected, supplied)
