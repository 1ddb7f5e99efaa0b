# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Small helpers shared by the apfsclone test modules."""

from __future__ import (
    annotations,
)
import contextlib
import inspect
import io
import logging
import types
import unittest
from collections.abc import (
    Iterable,
    Iterator,
)
from typing import (
    Any,
    Callable,
)


@contextlib.contextmanager
def stop_on_failure_subtest(**params: Any) -> Iterator[None]:
    """Like TestCase.subTest(), except that the first failing case ends the test and names its parameters."""
    try:
        yield
    except AssertionError as e:
        raise AssertionError(f"Case failed: {params}") from e


@contextlib.contextmanager
def suppress_output() -> Iterator[None]:
    """Discards console output and mutes all loggers for the duration of the block."""
    previous_level: int = logging.root.manager.disable
    with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
        logging.disable(logging.CRITICAL)
        try:
            yield
        finally:
            logging.disable(previous_level)


def _test_case_classes(tests: Iterable[Any]) -> Iterator[type]:
    """Yields the class of every test case within a possibly nested suite."""
    for test in tests:
        if isinstance(test, unittest.TestSuite):
            yield from _test_case_classes(test)
        else:
            yield type(test)


#############################################################################
class TestSuiteCompleteness(unittest.TestCase):
    """Fails if a test module defines a TestCase class that its suite() forgets to run."""

    def __init__(
        self,
        method_name: str = "runTest",
        modules: list[types.ModuleType] | None = None,
        class_predicate: Callable[[type[unittest.TestCase]], bool] | None = None,
    ) -> None:
        super().__init__(method_name)
        self.modules: list[types.ModuleType] = modules or []
        self.class_predicate: Callable[[type[unittest.TestCase]], bool] = class_predicate or (lambda _cls: False)

    def defined_classes(self, module: types.ModuleType) -> set[str]:
        return {
            cls.__name__
            for _, cls in inspect.getmembers(module, inspect.isclass)
            if issubclass(cls, unittest.TestCase) and cls.__module__ == module.__name__ and self.class_predicate(cls)
        }

    def test_every_module_suite_runs_all_of_its_test_classes(self) -> None:
        orphans: dict[str, list[str]] = {}
        for module in self.modules:
            suite_classes: set[str] = {cls.__name__ for cls in _test_case_classes(module.suite())}
            missing: list[str] = sorted(self.defined_classes(module) - suite_classes)
            if missing:
                orphans[module.__name__] = missing
        if orphans:
            lines = [f"  {name}: {', '.join(classes)}" for name, classes in sorted(orphans.items())]
            self.fail("TestCase classes missing from their module's suite():\n" + "\n".join(lines))
