import functools
import io
import sys

import portage.output
from pkgutil import resolve_name as resolve

import estrogen

# disable output
estrogen.out.quiet = True

def capture_stdout (f):
    """A decorator for capturing stdout in a io.StringIO object."""
    @functools.wraps(f)
    def capture (*args, **kwargs):
        quiet = estrogen.out.quiet
        estrogen.out.quiet = False
        stdout = sys.stdout
        sys.stdout = io.StringIO()
        try:
            return f(*args, **kwargs)
        finally:
            sys.stdout = stdout
            estrogen.out.quiet = quiet
    return capture

def capture_stderr (f):
    """A decorator for capturing stderr in a io.StringIO object."""
    @functools.wraps(f)
    def capture (*args, **kwargs):
        quiet = estrogen.out.quiet
        estrogen.out.quiet = False
        stderr = sys.stderr
        sys.stderr = io.StringIO()
        try:
            return f(*args, **kwargs)
        finally:
            sys.stderr = stderr
            estrogen.out.quiet = quiet
    return capture

def colorless (f):
    """A decorator for disabling portage's colorful output."""
    @functools.wraps(f)
    def nocolor (*args, **kwargs):
        havecolor = portage.output.havecolor
        portage.output.havecolor = 0
        try:
            return f(*args, **kwargs)
        finally:
            portage.output.havecolor = havecolor
    return nocolor

class Interceptor:
    """Intercept, trace and/or replace module level function calls."""

    class Tracer:

        def __init__ (self, interceptor, target, log, call):
            self.name = f"{target.__module__}.{target.__qualname__}"
            self.parent = resolve(target.__module__)
            self.interceptor = interceptor
            self.target = target
            self.log = log
            self.call = call

        def start (self):
            def call (*args, **kwargs):
                if self.log:
                    self.interceptor.trace.append((self, (args, kwargs)))
                if callable(self.call):
                    return self.call(self, *args, **kwargs)
            setattr(self.parent, self.target.__name__, call)

        def stop (self):
            setattr(self.parent, self.target.__name__, self.target)

    def __init__ (self):
        self.targets = {}
        self.trace = []

    def add (self, target, log=True, call=None):
        """
        Intercept calls to the given function.

        Args:
            target: the intercepted function object
            log (bool): trace calls if True
            call: function to be called instead
        """
        if target in self.targets:
            raise RuntimeError(f"{self.targets[target].name} already caught")
        if not callable(target):
            raise RuntimeError(f"{target.__name__} is not callable")
        self.targets[target] = self.Tracer(self, target, log, call)

    def calls (self, name):
        """Get the positional arguments of all traced calls to name."""
        return [args for tracer, (args, kwargs) in self.trace if tracer.name == name]

    def start (self):
        """Start intercepting calls to the registered functions."""
        for tracer in self.targets.values(): tracer.start()

    def stop (self):
        """Stop intercepting calls to the registered functions."""
        for tracer in self.targets.values(): tracer.stop()
