from .canada_post import RetrievedAddress, retrieve_address
from .meetings import fetch_meetings

__all__ = ["RetrievedAddress", "fetch_meetings", "retrieve_address"]
