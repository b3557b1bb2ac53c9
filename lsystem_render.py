#!/usr/bin/env python3
"""lsystem_render.py

Turtle-graphics interpreter for :mod:`lsystem` that renders to SVG.

Key features:
- JSON-based input configuration (alphabet, defines, productions, turtle, svg).
- Parametric, context-sensitive and stochastic productions via LSystem.
- Turtle registered as the system's command table; ``F(l)``/``+(a)`` override
  step length and turn angle with their first parameter.
- Branching via push/pop.
- Multi-polyline output (vector-editor friendly).

Run:
  python lsystem_render.py render config.json output.svg
  python lsystem_render.py expand config.json
  python lsystem_render.py validate config.json
  python lsystem_render.py --help
"""

from __future__ import annotations

import argparse
import json
import logging
import math
import os
import sys
from collections.abc import Sequence
from dataclasses import dataclass, fields
from typing import Any, Literal, cast

from lsystem import (
    DEFAULT_SYMBOLS,
    IGNORED_SYMBOLS,
    Command,
    ConfigError,
    LSystem,
    LSystemError,
    Params,
    format_axiom,
)

Point = tuple[float, float]


# -------------------------
# Errors / Validation
# -------------------------


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigError(msg)


def _as_float(x: Any, path: str) -> float:
    _require(
        isinstance(x, (int, float)) and not isinstance(x, bool), f"{path} must be a number"
    )
    return float(x)


def _as_int(x: Any, path: str) -> int:
    _require(
        isinstance(x, int) and not isinstance(x, bool), f"{path} must be an integer"
    )
    return int(x)


def _as_str(x: Any, path: str) -> str:
    _require(isinstance(x, str), f"{path} must be a string")
    return cast(str, x)


def _as_bool(x: Any, path: str) -> bool:
    _require(isinstance(x, bool), f"{path} must be a boolean")
    return cast(bool, x)


def _as_dict(x: Any, path: str) -> dict[str, Any]:
    _require(isinstance(x, dict), f"{path} must be an object")
    return cast(dict[str, Any], x)


def _as_symbols(x: Any, path: str) -> tuple[str, ...]:
    if isinstance(x, str):
        return tuple(x)
    _require(
        isinstance(x, list) and all(isinstance(s, str) for s in x),
        f"{path} must be a string or a list of strings",
    )
    return tuple(x)


# -------------------------
# Command model
# -------------------------

ActionType = Literal["forward", "turn", "turn_abs", "push", "pop", "noop"]

_ACTION_TYPES = ("forward", "turn", "turn_abs", "push", "pop", "noop")


@dataclass(frozen=True)
class TurtleState:
    x: float
    y: float
    heading_deg: float


@dataclass(frozen=True)
class TurtleAction:
    type: ActionType
    draw: bool = True
    step: float = 1.0
    direction: int = 1
    angle: float | None = None


@dataclass(frozen=True)
class SvgStyle:
    stroke: str = "#000"
    stroke_width: float = 1.0
    fill: str = "none"
    stroke_linecap: str = "round"
    stroke_linejoin: str = "round"


@dataclass(frozen=True)
class SvgOptions:
    margin: float = 10.0
    precision: int = 3
    flip_y: bool = True
    width: float | None = None
    height: float | None = None
    style: SvgStyle = SvgStyle()
    background: str | None = None


@dataclass(frozen=True)
class RenderConfig:
    name: str

    # system
    alphabet: tuple[str, ...]
    ignored_symbols: tuple[str, ...]
    axiom: str
    iterations: int
    seed: int | str | None
    defines: dict[str, float]
    # ordered (key, production) registrations
    productions: list[tuple[str, Any]]

    # turtle
    angle_deg: float
    step: float
    start: TurtleState
    actions: dict[str, TurtleAction]

    svg: SvgOptions


def parse_action(sym: str, obj: Any) -> TurtleAction:
    action = _as_dict(obj, f"turtle.commands['{sym}']")
    atype = action.get("type")
    _require(
        atype in _ACTION_TYPES,
        f"command for '{sym}' must have 'type' in {list(_ACTION_TYPES)}, got {atype!r}",
    )

    if atype == "forward":
        draw = action.get("draw")
        _require(
            isinstance(draw, bool),
            f"forward command for '{sym}' must have boolean field 'draw'",
        )
        return TurtleAction(
            "forward", draw=draw, step=_as_float(action.get("step", 1), f"command '{sym}'.step")
        )

    if atype == "turn":
        direction = action.get("direction")
        _require(
            direction in (-1, 1) and not isinstance(direction, bool),
            f"turn command for '{sym}' must have direction -1 or 1",
        )
        # A relative turn's angle multiplies turtle.angle.
        return TurtleAction(
            "turn",
            direction=int(direction),
            angle=_as_float(action.get("angle", 1), f"command '{sym}'.angle"),
        )

    if atype == "turn_abs":
        return TurtleAction(
            "turn_abs", angle=_as_float(action.get("angle"), f"command '{sym}'.angle")
        )

    return TurtleAction(cast(ActionType, atype))


# -------------------------
# Turtle interpreter
# -------------------------


@dataclass
class PolylineBuffer:
    polylines: list[list[Point]]

    def start_new(self, p: Point) -> None:
        self.polylines.append([p])

    def add_point(self, p: Point) -> None:
        if not self.polylines:
            raise RuntimeError("add_point() called before start_new()")
        cur = self.polylines[-1]
        if not cur or cur[-1] != p:
            cur.append(p)


_DefaultAction = Literal["forward_draw", "forward_move", "noop"]

_DEFAULT_ACTIONS: dict[str, TurtleAction | None] = {
    "forward_draw": TurtleAction("forward", draw=True),
    "forward_move": TurtleAction("forward", draw=False),
    "noop": None,
}


class Turtle:
    """2D turtle that consumes an axiom through LSystem commands.

    Symbols of the active alphabet with no action use ``default_action``:
      - "forward_draw": draw forward
      - "forward_move": move forward without drawing
      - "noop": ignore

    When a dispatched part carries parameters, the first one overrides the
    magnitude of forward and turn actions (``F(12)`` moves 12 units,
    ``+(30)`` turns 30 degrees).
    """

    def __init__(
        self,
        *,
        angle_deg: float,
        step: float,
        start: TurtleState,
        actions: dict[str, TurtleAction],
        default_action: _DefaultAction = "forward_draw",
    ) -> None:
        _require(step > 0, "turtle.step must be > 0")
        _require(
            default_action in _DEFAULT_ACTIONS,
            (
                "default_action must be 'forward_draw', 'forward_move', or 'noop'; got "
                f"{default_action!r}"
            ),
        )
        self.angle_deg = angle_deg
        self.step = step
        self.start = start
        self.actions = dict(actions)
        self.default_action = default_action
        self.reset()

    def reset(self) -> None:
        self.x, self.y, self.heading = self.start.x, self.start.y, self.start.heading_deg
        self.stack: list[TurtleState] = []
        self.buf = PolylineBuffer(polylines=[])
        self.buf.start_new((self.x, self.y))

    def bind(self, system: LSystem) -> None:
        """Install this turtle as the command table of ``system``."""
        commands: dict[str, Command] = {}
        default = _DEFAULT_ACTIONS[self.default_action]
        if default is not None:
            for sym in system.alphabet:
                commands[sym] = self._command(sym, default)
        for sym, action in self.actions.items():
            commands[sym] = self._command(sym, action)
        system.set_commands(commands)

    def _command(self, sym: str, action: TurtleAction) -> Command:
        def command(index: int, part: Any, params: Params) -> None:
            self.perform(sym, action, params)

        return command

    def perform(self, sym: str, action: TurtleAction, params: Params = ()) -> None:
        if action.type == "noop":
            return

        if action.type == "turn":
            if params:
                delta = float(params[0])
            else:
                delta = (action.angle if action.angle is not None else 1) * self.angle_deg
            self.heading += action.direction * delta
            return

        if action.type == "turn_abs":
            self.heading += float(params[0]) if params else cast(float, action.angle)
            return

        if action.type == "push":
            # The branch continues the active polyline; only pop starts a new one,
            # so no stroke connects a branch tip back to the trunk.
            self.stack.append(TurtleState(self.x, self.y, self.heading))
            return

        if action.type == "pop":
            _require(bool(self.stack), f"pop command '{sym}' encountered with empty stack")
            st = self.stack.pop()
            self.x, self.y, self.heading = st.x, st.y, st.heading_deg
            self.buf.start_new((self.x, self.y))
            return

        dist = float(params[0]) if params else self.step * action.step
        rad = math.radians(self.heading)
        nx = self.x + dist * math.cos(rad)
        ny = self.y + dist * math.sin(rad)
        if action.draw:
            self.buf.add_point((nx, ny))
        else:
            # Pen-up move: start a new polyline at the destination.
            self.buf.start_new((nx, ny))
        self.x, self.y = nx, ny

    def polylines(self) -> list[list[Point]]:
        """Drawn polylines, without empty or single-point leftovers."""
        return [pl for pl in self.buf.polylines if len(pl) >= 2]


def interpret(system: LSystem, turtle: Turtle) -> list[list[Point]]:
    """Walk the system's current axiom with ``turtle`` and return its polylines."""
    turtle.reset()
    turtle.bind(system)
    system.run()
    return turtle.polylines()


# -------------------------
# SVG writing
# -------------------------


def _ensure_parent_dir(path: str) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)


def compute_bounds(polylines: list[list[Point]]) -> tuple[float, float, float, float]:
    _require(len(polylines) > 0, "No drawable geometry produced.")
    xs = [x for pl in polylines for x, _ in pl]
    ys = [y for pl in polylines for _, y in pl]
    return (min(xs), min(ys), max(xs), max(ys))


def _fmt(x: float, precision: int) -> str:
    # -0.0 must never print as "-0".
    if not x:
        x = 0.0
    s = f"{x:.{precision}f}"
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return s or "0"


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def svg_document(
    polylines: list[list[Point]], options: SvgOptions, title: str | None = None
) -> str:
    """Build the SVG text for ``polylines``; the viewBox follows their bounds."""
    p = options.precision
    minx, miny, maxx, maxy = compute_bounds(polylines)

    # The margin is applied before the size check so collinear geometry can
    # still render when a margin is set.
    minx -= options.margin
    miny -= options.margin
    maxx += options.margin
    maxy += options.margin
    w = maxx - minx
    h = maxy - miny
    _require(
        w > 0 and h > 0,
        "Degenerate bounds after margin (width or height is zero). "
        "Set svg.margin > 0 to render collinear or single-point geometry.",
    )

    size = ""
    if options.width:
        size += f' width="{_fmt(options.width, p)}"'
    if options.height:
        size += f' height="{_fmt(options.height, p)}"'
    view_box = f"{_fmt(minx, p)} {_fmt(miny, p)} {_fmt(w, p)} {_fmt(h, p)}"

    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<svg xmlns="http://www.w3.org/2000/svg" version="1.1" '
        f'viewBox="{view_box}"{size}>',
    ]
    if title:
        lines.append(f"  <title>{_escape(title)}</title>")
    if options.background and options.background.lower() != "none":
        lines.append(
            f'  <rect x="{_fmt(minx, p)}" y="{_fmt(miny, p)}" '
            f'width="{_fmt(w, p)}" height="{_fmt(h, p)}" '
            f'fill="{options.background}" />'
        )

    style = options.style
    style_attr = (
        f'stroke="{style.stroke}" stroke-width="{_fmt(style.stroke_width, p)}" '
        f'fill="{style.fill}" stroke-linecap="{style.stroke_linecap}" '
        f'stroke-linejoin="{style.stroke_linejoin}"'
    )

    indent = "  "
    if options.flip_y:
        # Mirror about the vertical centre of the viewBox.
        lines.append(f'  <g transform="translate(0,{_fmt(miny + maxy, p)}) scale(1,-1)">')
        indent = "    "
    for pl in polylines:
        pts = " ".join(f"{_fmt(x, p)},{_fmt(y, p)}" for x, y in pl)
        lines.append(f'{indent}<polyline points="{pts}" {style_attr} />')
    if options.flip_y:
        lines.append("  </g>")
    lines.append("</svg>")
    return "\n".join(lines) + "\n"


def write_svg(
    polylines: list[list[Point]],
    *,
    out_path: str,
    options: SvgOptions,
    title: str | None = None,
) -> None:
    text = svg_document(polylines, options, title)
    _ensure_parent_dir(out_path)
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(text)


# -------------------------
# Config parsing
# -------------------------


def _parse_productions(obj: Any) -> list[tuple[str, Any]]:
    productions = _as_dict(obj, "productions")
    out: list[tuple[str, Any]] = []
    for key, value in productions.items():
        # A list of production objects registers several rules for one key.
        if isinstance(value, list) and value and all(
            isinstance(v, str) or (isinstance(v, dict) and "symbol" not in v)
            for v in value
        ):
            out.extend((key, v) for v in value)
        else:
            out.append((key, value))
    return out


def _parse_style(obj: Any) -> SvgStyle:
    style = _as_dict(obj, "svg.style")
    known = {f.name for f in fields(SvgStyle)}
    unknown = set(style) - known
    _require(not unknown, f"unknown svg.style keys: {sorted(unknown)}")
    values: dict[str, Any] = {}
    for key, value in style.items():
        path = f"svg.style.{key}"
        values[key] = _as_float(value, path) if key == "stroke_width" else _as_str(value, path)
    return SvgStyle(**values)


def _positive_or_none(x: Any, path: str) -> float | None:
    if x is None:
        return None
    value = _as_float(x, path)
    _require(value > 0, f"{path} must be > 0")
    return value


def _parse_svg(obj: Any) -> SvgOptions:
    svg = _as_dict(obj, "svg")
    precision = _as_int(svg.get("precision", 3), "svg.precision")
    _require(0 <= precision <= 10, "svg.precision must be between 0 and 10")
    background = svg.get("background")
    return SvgOptions(
        margin=_as_float(svg.get("margin", 10), "svg.margin"),
        precision=precision,
        flip_y=_as_bool(svg.get("flip_y", True), "svg.flip_y"),
        width=_positive_or_none(svg.get("width"), "svg.width"),
        height=_positive_or_none(svg.get("height"), "svg.height"),
        style=_parse_style(svg.get("style", {})),
        background=None if background is None else _as_str(background, "svg.background"),
    )


def parse_config(obj: dict[str, Any]) -> RenderConfig:
    obj = _as_dict(obj, "root")

    name = _as_str(obj.get("name", "L-System"), "name")
    alphabet = _as_symbols(obj.get("alphabet", list(DEFAULT_SYMBOLS)), "alphabet")
    ignored_symbols = _as_symbols(
        obj.get("ignored_symbols", list(IGNORED_SYMBOLS)), "ignored_symbols"
    )
    axiom = _as_str(obj.get("axiom", ""), "axiom")
    _require(len(axiom) > 0, "axiom must be non-empty")

    iterations = _as_int(obj.get("iterations", 0), "iterations")
    _require(iterations >= 0, "iterations must be >= 0")

    seed = obj.get("seed")
    _require(
        seed is None or (isinstance(seed, (int, str)) and not isinstance(seed, bool)),
        "seed must be an integer or a string",
    )

    defines_obj = _as_dict(obj.get("defines", {}), "defines")
    defines = {k: _as_float(v, f"defines['{k}']") for k, v in defines_obj.items()}

    productions = _parse_productions(obj.get("productions", {}))

    turtle = _as_dict(obj.get("turtle", {}), "turtle")
    angle_deg = _as_float(turtle.get("angle", 90), "turtle.angle")
    step = _as_float(turtle.get("step", 10), "turtle.step")
    _require(step > 0, "turtle.step must be > 0")

    start_obj = _as_dict(turtle.get("start", {}), "turtle.start")
    start = TurtleState(
        x=_as_float(start_obj.get("x", 0), "turtle.start.x"),
        y=_as_float(start_obj.get("y", 0), "turtle.start.y"),
        heading_deg=_as_float(start_obj.get("heading", 0), "turtle.start.heading"),
    )

    commands_obj = _as_dict(turtle.get("commands", {}), "turtle.commands")
    known = set(alphabet) | set(ignored_symbols)
    actions: dict[str, TurtleAction] = {}
    for sym, action in commands_obj.items():
        _require(sym in known, f"turtle.commands key {sym!r} is not a known symbol")
        actions[sym] = parse_action(sym, action)

    cfg = RenderConfig(
        name=name,
        alphabet=alphabet,
        ignored_symbols=ignored_symbols,
        axiom=axiom,
        iterations=iterations,
        seed=seed,
        defines=defines,
        productions=productions,
        angle_deg=angle_deg,
        step=step,
        start=start,
        actions=actions,
        svg=_parse_svg(obj.get("svg", {})),
    )

    # Alphabet, axiom and production syntax are checked by building once.
    build_system(cfg)
    return cfg


def build_system(cfg: RenderConfig) -> LSystem:
    system = LSystem(
        cfg.alphabet,
        ignored_symbols=cfg.ignored_symbols,
        defines=cfg.defines,
        axiom=cfg.axiom,
        iterations=cfg.iterations,
        seed=cfg.seed,
    )
    for key, production in cfg.productions:
        system.set_production(key, production)
    return system


def build_turtle(
    cfg: RenderConfig, default_action: _DefaultAction = "forward_draw"
) -> Turtle:
    return Turtle(
        angle_deg=cfg.angle_deg,
        step=cfg.step,
        start=cfg.start,
        actions=cfg.actions,
        default_action=default_action,
    )


def load_json(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        try:
            return cast(dict[str, Any], json.load(f))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e


# -------------------------
# CLI / Help
# -------------------------

HELP_EPILOG = r"""
INPUT JSON SYNTAX

  name: string (optional)
      Written into the SVG <title>.

  alphabet: string or list of strings (default "A".."Z")
      Active symbols; a string is split into single characters.

  ignored_symbols: string or list (default + - & ^ / | \ ! . { } [ ] ( ))
      Symbols that never rewrite and that context matching sees through.

  axiom: string (required)
      Initial phrase, e.g. "A(1)B".

  iterations: integer >= 0 (default 0)

  seed: integer or string (optional)
      Mixed into stochastic choices; the same seed gives the same drawing.

  defines: object mapping name -> number (optional)
      Constants usable in parameter expressions.

  productions: object (optional)
      Keys: "A", "A(x,y)", "B<A", "A>C", "B(y)<A(x)>C".
      Values:
        "phrase"                                   e.g. "F(x*0.5)[+A(x)]"
        {"successor": "phrase", "context": {"before": "B", "after": "C"}}
        {"stochastic": [{"successor": "F", "weight": 1}, ...]}
        [ <value>, <value>, ... ]                  tried in order
      Parameter expressions accept numbers, defines, bound names,
      + - * / and parentheses.

  turtle: object (optional)
    angle: number (default 90)     base turn angle in degrees
    step: number (default 10)      base forward step
    start: {x, y, heading}         heading 0 = +X, 90 = +Y
    commands: object mapping symbol -> action

      { "type": "forward", "draw": true|false, "step": <multiplier> }
      { "type": "turn", "direction": +1|-1, "angle": <multiplier> }
      { "type": "turn_abs", "angle": <degrees> }
      { "type": "push" } / { "type": "pop" }
      { "type": "noop" }

      A first parameter overrides the magnitude: F(12) moves 12 units,
      +(30) turns 30 degrees. Alphabet symbols without an action use
      --default-action.

  svg: object (optional)
    margin (10), precision (3), flip_y (true), width, height,
    background, style {stroke, stroke_width, fill, stroke_linecap,
    stroke_linejoin}

Example (Koch curve):

    {
      "alphabet": "F",
      "axiom": "F",
      "iterations": 4,
      "productions": {"F": "F+F--F+F"},
      "turtle": {
        "angle": 60,
        "commands": {
          "F": {"type": "forward", "draw": true},
          "+": {"type": "turn", "direction": 1},
          "-": {"type": "turn", "direction": -1}
        }
      }
    }
"""


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="lsystem_render.py",
        description="Parametric, context-sensitive, stochastic L-system renderer (SVG).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=HELP_EPILOG,
    )
    p.add_argument(
        "-v", "--verbose", action="store_true", help="Log each rewrite pass."
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    pr = sub.add_parser("render", help="Render a JSON config to an SVG file.")
    pr.add_argument("config", help="Path to the input JSON config.")
    pr.add_argument("output", help="Path to write the SVG output.")
    pr.add_argument(
        "--default-action",
        choices=["forward_draw", "forward_move", "noop"],
        default="forward_draw",
        help=(
            "What to do for alphabet symbols not found in turtle.commands. "
            "Default: forward_draw."
        ),
    )

    pe = sub.add_parser("expand", help="Print the rewritten axiom.")
    pe.add_argument("config", help="Path to the input JSON config.")
    pe.add_argument(
        "--symbols-only",
        action="store_true",
        help="Drop parameters and print symbols only.",
    )

    pv = sub.add_parser(
        "validate", help="Validate a JSON config and print a brief summary."
    )
    pv.add_argument("config", help="Path to the input JSON config.")

    return p


# -------------------------
# Commands
# -------------------------


def cmd_render(config_path: str, output_path: str, default_action: _DefaultAction) -> None:
    cfg = parse_config(load_json(config_path))
    system = build_system(cfg)
    system.iterate()
    polylines = interpret(system, build_turtle(cfg, default_action))
    write_svg(polylines, out_path=output_path, options=cfg.svg, title=cfg.name)


def cmd_expand(config_path: str, symbols_only: bool) -> None:
    cfg = parse_config(load_json(config_path))
    system = build_system(cfg)
    system.iterate()
    print(system.get_axiom_string() if symbols_only else format_axiom(system.axiom))


_VALIDATE_SYMBOL_LIMIT = 10_000


def cmd_validate(config_path: str) -> None:
    cfg = parse_config(load_json(config_path))
    system = build_system(cfg)

    print(f"name: {cfg.name}")
    print(f"alphabet: {''.join(cfg.alphabet)}")
    print(f"axiom: {format_axiom(system.axiom)}")
    print(f"iterations: {cfg.iterations}")
    print(f"defines: {len(cfg.defines)}")
    print(f"productions: {len(cfg.productions)}")
    print(
        "turtle: "
        f"angle={cfg.angle_deg} step={cfg.step} "
        f"start=({cfg.start.x},{cfg.start.y},{cfg.start.heading_deg}deg)"
    )
    print(f"commands: {len(cfg.actions)}")
    svg = cfg.svg
    print(f"svg: margin={svg.margin} precision={svg.precision} flip_y={svg.flip_y}")

    # Rewrite pass by pass so exponential growth stops early.
    passes = 0
    while passes < cfg.iterations and len(system.axiom) <= _VALIDATE_SYMBOL_LIMIT:
        system.iterate(1)
        passes += 1
    truncated = passes < cfg.iterations

    polylines = interpret(system, build_turtle(cfg))
    print(f"symbols: {len(system.axiom)} after {passes} pass(es)")
    print(f"polylines: {len(polylines)}")
    if truncated:
        print(
            f"warning: expansion exceeds {_VALIDATE_SYMBOL_LIMIT} symbols; "
            "geometry stats are based on the partial expansion only"
        )
    if not polylines:
        raise ConfigError("Config produces no drawable geometry")


def main(argv: Sequence[str] | None = None) -> int:
    ap = build_argparser()
    args = ap.parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    try:
        if args.cmd == "render":
            cmd_render(
                args.config, args.output, cast(_DefaultAction, args.default_action)
            )
        elif args.cmd == "expand":
            cmd_expand(args.config, args.symbols_only)
        elif args.cmd == "validate":
            cmd_validate(args.config)
        else:
            raise AssertionError("unreachable")
    except LSystemError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"File error: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
