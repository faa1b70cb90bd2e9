"""Stream encoder — the single consumer writing alerts to the output sink."""

from __future__ import annotations

import json
import logging

from ..exceptions import EncoderError
from ..models import Alert
from ..sinks import OutputSink
from .stream import AlertStream

logger = logging.getLogger("mdatp-watch")


class StreamEncoder:
    """Serialize each alert as one JSON document per write."""

    def __init__(self, sink: OutputSink, indent: bool = False) -> None:
        self._sink = sink
        self._indent = "\t" if indent else None
        self.written = 0

    def encode(self, alert: Alert) -> bytes:
        return (json.dumps(alert.to_json_dict(), indent=self._indent) + "\n").encode(
            "utf-8"
        )

    async def run(self, stream: AlertStream) -> int:
        """Drain ``stream`` until it is closed. Returns the number of alerts written.

        A write failure is fatal and raised as EncoderError.
        """
        while True:
            alert = await stream.get()
            if alert is None:
                logger.debug(f"Alert stream closed after {self.written} alerts")
                return self.written
            data = self.encode(alert)
            try:
                await self._sink.write(data)
            except Exception as e:
                logger.error(f"Output write failed: {e}")
                raise EncoderError(f"could not write alert {alert.id}: {e}") from e
            self.written += 1
