from .email import EmailTransport, LoggingEmailTransport, SmtpEmailTransport, build_email_transport
from .push import PushHub, PushSink, StreamWriterSink
from .service import NotificationService
from .ticketing import HttpTicketing, SimulatedTicketing, TicketingClient, build_ticketing

__all__ = [
    "EmailTransport",
    "HttpTicketing",
    "LoggingEmailTransport",
    "NotificationService",
    "PushHub",
    "PushSink",
    "SimulatedTicketing",
    "SmtpEmailTransport",
    "StreamWriterSink",
    "TicketingClient",
    "build_email_transport",
    "build_ticketing",
]
