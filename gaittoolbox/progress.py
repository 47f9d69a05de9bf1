"""
progress.py
-----------
Description: Status reporting for batch runs. Only the orchestrator's supervising thread writes to a reporter.
"""

from typing import Callable, Optional


class ProgressReporter:
    total: int
    count: int

    def __init__(self, callback: Optional[Callable[[int, int], None]] = None, verbose: bool = True):
        self.callback = callback
        self.verbose = verbose
        self.total = 0
        self.count = 0

    def message(self, text: str):
        if self.verbose:
            print(text, flush=True)

    def begin(self, total: int):
        self.total = total
        self.count = 0
        self.message('Beginning processing.')
        if self.callback is not None:
            self.callback(self.count, self.total)

    def advance(self):
        self.count += 1
        if self.verbose:
            print(f'Completed {self.count}/{self.total}', flush=True)
        if self.callback is not None:
            self.callback(self.count, self.total)

    def complete(self):
        self.message('Data processing complete.')

    def failed(self, element: str):
        self.message(f'Failed on the following element: {element}')
