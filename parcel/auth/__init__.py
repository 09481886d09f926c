from .service import AuthService, PendingTotp, SignInResult, TotpEnrolment, decode_totp_secret

__all__ = ["AuthService", "PendingTotp", "SignInResult", "TotpEnrolment", "decode_totp_secret"]
