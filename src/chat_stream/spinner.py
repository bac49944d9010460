import sys
import threading

_SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"


class Spinner:
    """Thread-based spinner that renders on the current line using \\r.

    The label can change while it runs, which is how status frames
    ("thinking", "searching") are shown before any text arrives.
    """

    def __init__(self, prefix: str = "", label: str = " Thinking..."):
        self._prefix = prefix
        self._label = label
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._frame_width = 1 + len(label)
        self._label_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop.is_set()

    def set_label(self, label: str) -> None:
        with self._label_lock:
            self._label = label
            self._frame_width = max(self._frame_width, 1 + len(label))

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        if self._thread:
            self._thread.join()
        clear = self._prefix + " " * self._frame_width
        sys.stdout.write("\r" + clear + "\r" + self._prefix)
        sys.stdout.flush()

    def _run(self) -> None:
        i = 0
        try:
            while not self._stop.is_set():
                with self._label_lock:
                    label = self._label
                    width = self._frame_width
                frame = (_SPINNER_FRAMES[i % len(_SPINNER_FRAMES)] + label).ljust(width)
                sys.stdout.write("\r" + self._prefix + frame)
                sys.stdout.flush()
                self._stop.wait(0.08)
                i += 1
        except (UnicodeEncodeError, OSError):
            pass  # terminal can't draw these characters
