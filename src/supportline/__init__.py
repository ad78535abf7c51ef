"""
Support line voice bridge.

Twilio Media Streams in, OpenAI Realtime for speech, a human agent when the
assistant cannot help, and a Kayako case for every call.
"""

__version__ = "1.0.0"
