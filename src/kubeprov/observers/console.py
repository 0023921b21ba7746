# src/kubeprov/observers/console.py
from .events import BaseEvent, ProgressEvent


class ConsoleObserver:
    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        if isinstance(event, ProgressEvent):
            target = event.node or "cluster"
            print(f"[{d['ts']}] {target}: {event.verb} {event.message}".rstrip(), flush=True)
            return
        print(f"[{d['ts']}] {k} run={d['run_id']} cluster={d['cluster']} data={{"
              + ", ".join(f"{x}={y}" for x, y in d.items() if x not in ('ts', 'run_id', 'cluster')) + "}")
