from .gateway import VerificationGateway

__all__ = ["VerificationGateway"]
