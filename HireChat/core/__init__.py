from .message.protocol import Envelope, EventName, MessageStatus, MessageType

__all__ = ['Envelope', 'EventName', 'MessageStatus', 'MessageType']
