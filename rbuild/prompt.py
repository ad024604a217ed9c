# rbuild/prompt.py
"""
Interactive questions asked during a build, rendered with rich.

Every question has a documented non-interactive answer, so unattended
builds never block on stdin:

 - yes/no: the question's default
 - view script: no
 - several index candidates for one name: the first, with a warning
 - optional dependencies: none
"""

from __future__ import annotations
from typing import Dict, List, Optional, Sequence

from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.syntax import Syntax
from rich.table import Table

from .db import Package
from .errors import UserAbortError
from .logging import get_logger

logger = get_logger("prompt")


def _parse_choices(answer: str, count: int) -> List[int]:
    """'1 3' or '1,3' or '2-4' -> zero-based indices; out-of-range entries are ignored."""
    out: List[int] = []
    for part in answer.replace(",", " ").split():
        if "-" in part:
            lo, _, hi = part.partition("-")
            if lo.isdigit() and hi.isdigit():
                rng = range(int(lo), int(hi) + 1)
            else:
                continue
        elif part.isdigit():
            rng = range(int(part), int(part) + 1)
        else:
            continue
        for n in rng:
            if 1 <= n <= count and n - 1 not in out:
                out.append(n - 1)
    return out


class Prompter:
    def __init__(self, console: Optional[Console] = None, interactive: bool = True,
                 pager_style: str = "native"):
        self.console = console or Console(stderr=True)
        self.interactive = interactive
        self.pager_style = pager_style

    def _interactive(self, interactive: Optional[bool]) -> bool:
        """A per-call flag overrides the one given at construction."""
        return self.interactive if interactive is None else interactive

    def yes_no(self, msg: str, default: bool, interactive: Optional[bool] = None) -> bool:
        if not self._interactive(interactive):
            return default
        return Confirm.ask(msg, default=default, console=self.console)

    def show_script(self, path: str, name: str) -> None:
        with open(path, encoding="utf-8", errors="replace") as f:
            code = f.read()
        syntax = Syntax(code, "bash", theme=self.pager_style, line_numbers=True)
        with self.console.pager(styles=True):
            self.console.rule(name)
            self.console.print(syntax)

    def view_script(self, path: str, name: str, interactive: Optional[bool] = None) -> None:
        """Offer to show the recipe; raises UserAbortError if the user then declines to continue."""
        if not self.yes_no(f"Would you like to view the build script for {name}?", False, interactive):
            return
        self.show_script(path, name)
        if not self.yes_no("Would you still like to continue?", False, interactive):
            raise UserAbortError("User chose not to continue after reading script")

    def choose_pkgs(self, options: Sequence[Package], verb: str) -> List[Package]:
        table = Table(title=f"Choose which package(s) to {verb}")
        table.add_column("#", justify="right")
        table.add_column("repository")
        table.add_column("name")
        table.add_column("version")
        for i, p in enumerate(options, 1):
            table.add_row(str(i), p.repository, p.name, p.full_version)
        self.console.print(table)
        answer = Prompt.ask("Packages (e.g. 1 2 or 1-3)", default="1", console=self.console)
        return [options[i] for i in _parse_choices(answer, len(options))]

    def flatten_pkgs(self, found: Dict[str, List[Package]], verb: str,
                     interactive: Optional[bool] = None) -> List[Package]:
        """One list out of the per-name candidates, asking when a name has several."""
        out: List[Package] = []
        for name, pkgs in found.items():
            if len(pkgs) > 1:
                if self._interactive(interactive):
                    out.extend(self.choose_pkgs(pkgs, verb))
                else:
                    logger.warning("several packages match '%s'; using %s/%s",
                                   name, pkgs[0].repository, pkgs[0].name)
                    out.append(pkgs[0])
            elif len(pkgs) == 1:
                out.append(pkgs[0])
        return out

    def choose_opt_depends(self, options: Sequence[str], verb: str,
                           interactive: Optional[bool] = None) -> List[str]:
        if not self._interactive(interactive) or not options:
            return []
        table = Table(title=f"Choose which optional package(s) to {verb}")
        table.add_column("#", justify="right")
        table.add_column("package")
        for i, opt in enumerate(options, 1):
            table.add_row(str(i), opt)
        self.console.print(table)
        answer = Prompt.ask("Packages (empty for none)", default="", console=self.console)
        # opt_deps entries may carry a description after ": "
        return [options[i].split(": ", 1)[0] for i in _parse_choices(answer, len(options))]


# module-level helpers over a throwaway Prompter
def yes_no_prompt(msg: str, interactive: bool, default: bool) -> bool:
    return Prompter(interactive=interactive).yes_no(msg, default)


def prompt_view_script(script: str, name: str, style: str, interactive: bool) -> None:
    Prompter(interactive=interactive, pager_style=style).view_script(script, name)


def flatten_pkgs(found: Dict[str, List[Package]], verb: str, interactive: bool) -> List[Package]:
    return Prompter(interactive=interactive).flatten_pkgs(found, verb)


def choose_opt_depends(options: Sequence[str], verb: str, interactive: bool) -> List[str]:
    return Prompter(interactive=interactive).choose_opt_depends(options, verb)
