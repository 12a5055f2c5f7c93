from enum import Enum
from typing import Any, Callable, Dict, Mapping, Tuple, Type

from ..errors import ConfigurationError, UnknownJobError
from ..log import get_logger
from ..models import JobContext

log = get_logger("jobqueue.processors")

KindHandler = Callable[[JobContext], Any]


class KindProcessor:
    """
    One processor per queue. Job names are members of ``kinds`` (a str Enum)
    and every member must have an entry in ``handlers()``; a missing entry is
    a configuration error at construction, an unknown name a job failure.
    """

    queue_name: str = ""
    kinds: Type[Enum]

    def __init__(self):
        table = self.handlers()
        missing = [k.value for k in self.kinds if k not in table]
        if missing:
            raise ConfigurationError(
                f"{type(self).__name__} has no handler for: {', '.join(sorted(missing))}"
            )
        self._table = table

    def handlers(self) -> Dict[Enum, KindHandler]:
        raise NotImplementedError

    def kind_of(self, job: JobContext) -> Enum:
        try:
            return self.kinds(job.name)
        except ValueError:
            raise UnknownJobError(self.queue_name, job.name)

    def __call__(self, job: JobContext) -> Any:
        kind = self.kind_of(job)
        log.info("processing_job", queue=self.queue_name, job_name=job.name, job_id=job.id,
                 attempt=job.attempts_made)
        job.update_progress(10)
        return self._table[kind](job)


def require(payload: Mapping[str, Any], *keys: str) -> Tuple[Any, ...]:
    missing = [k for k in keys if payload.get(k) in (None, "")]
    if missing:
        raise ValueError(f"Missing payload field(s): {', '.join(missing)}")
    return tuple(payload[k] for k in keys)
