import cProfile
import io
import logging
import os
import pstats
import time
from contextlib import contextmanager
from functools import wraps

logger = logging.getLogger(__name__)


class Profiler:
    """Utility class for profiling code execution."""

    def __init__(self, enabled=True, output_dir=None):
        """
        Initialize the profiler.

        Parameters:
        -----------
        enabled : bool
            Whether profiling is enabled
        output_dir : str, optional
            Directory to save profiling results; nothing is written when None
        """
        self.enabled = enabled
        self.output_dir = output_dir
        if enabled and output_dir is not None and not os.path.exists(output_dir):
            os.makedirs(output_dir)
        self.profiler = cProfile.Profile()
        self.start_time = None
        self.timings = {}

    def start(self):
        """Start the profiler."""
        if self.enabled:
            self.start_time = time.perf_counter()
            self.profiler.enable()
        return self

    def stop(self, name="profile"):
        """
        Stop the profiler, log the elapsed time and save results.

        Parameters:
        -----------
        name : str
            Name of the profiled section, used as output file prefix
        """
        if not self.enabled:
            return None

        self.profiler.disable()
        duration = time.perf_counter() - self.start_time
        self.timings[name] = duration
        logger.info("section '%s' took %.4f s", name, duration)

        s = io.StringIO()
        ps = pstats.Stats(self.profiler, stream=s).sort_stats('cumulative')
        ps.print_stats(30)

        if self.output_dir is not None:
            self.profiler.dump_stats(os.path.join(self.output_dir, f"{name}.prof"))
            with open(os.path.join(self.output_dir, f"{name}_report.txt"), 'w') as f:
                f.write(f"Total execution time: {duration:.4f} seconds\n\n")
                f.write(s.getvalue())

        return ps

    @contextmanager
    def profile_section(self, name):
        """
        Context manager for profiling a section of code.

        Parameters:
        -----------
        name : str
            Name of the section
        """
        section_profiler = Profiler(enabled=self.enabled, output_dir=self.output_dir)
        section_profiler.start()
        try:
            yield section_profiler
        finally:
            section_profiler.stop(name=name)
            self.timings.update(section_profiler.timings)

    def top_functions(self, n=20) -> str:
        """Report of the top N functions by cumulative time."""
        if not self.enabled:
            return ""
        s = io.StringIO()
        pstats.Stats(self.profiler, stream=s).sort_stats('cumulative').print_stats(n)
        return s.getvalue()


def profile_function(func):
    """Decorator that profiles each call of ``func`` and logs the top functions."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        profiler = Profiler()
        profiler.start()
        try:
            return func(*args, **kwargs)
        finally:
            profiler.stop(name=func.__name__)
            logger.debug("%s", profiler.top_functions())

    return wrapper
