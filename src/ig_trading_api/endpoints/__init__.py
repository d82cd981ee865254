from .session import SessionAPI, SessionDetails

__all__ = ["SessionAPI", "SessionDetails"]
