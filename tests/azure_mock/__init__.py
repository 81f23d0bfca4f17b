"""In-memory fakes of the directory, the resource store and the event sinks."""

from .events import FakeEventRecorder, FakeEventSink, RecordedEvent
from .factories import CLUSTER_NAME, TENANT_ID, TENANT_NAME, make_application, make_config
from .graph import FakeGraphApi
from .resources import FakeResourceStore

__all__ = [
    "CLUSTER_NAME",
    "TENANT_ID",
    "TENANT_NAME",
    "FakeEventRecorder",
    "FakeEventSink",
    "FakeGraphApi",
    "FakeResourceStore",
    "RecordedEvent",
    "make_application",
    "make_config",
]
