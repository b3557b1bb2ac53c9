#!/usr/bin/env python3
import io
import json
import math
import os
import tempfile
from contextlib import redirect_stderr, redirect_stdout
from typing import Any

import pytest

from lsystem import ConfigError, LSystem
from lsystem_render import (
    Point,
    RenderConfig,
    SvgOptions,
    SvgStyle,
    Turtle,
    TurtleState,
    build_system,
    compute_bounds,
    interpret,
    load_json,
    main,
    parse_action,
    parse_config,
    svg_document,
    write_svg,
)

_STANDARD_COMMANDS: dict[str, dict[str, Any]] = {
    "F": {"type": "forward", "draw": True},
    "f": {"type": "forward", "draw": False},
    "+": {"type": "turn", "direction": 1},
    "-": {"type": "turn", "direction": -1},
    "[": {"type": "push"},
    "]": {"type": "pop"},
}


class TestConfigParsing:
    def test_basic_config(self) -> None:
        config_data = {
            "alphabet": "F",
            "axiom": "F",
            "iterations": 1,
            "productions": {"F": "F+F"},
            "turtle": {
                "angle": 90,
                "step": 10,
                "start": {"x": 0, "y": 0, "heading": 0},
                "commands": {"F": {"type": "forward", "draw": True, "step": 1}},
            },
            "svg": {
                "margin": 5,
                "precision": 2,
                "flip_y": True,
                "style": {"stroke": "#000", "stroke_width": 1},
            },
        }
        config = parse_config(config_data)
        assert isinstance(config, RenderConfig)
        assert config.alphabet == ("F",)
        assert config.axiom == "F"
        assert config.iterations == 1
        assert config.productions == [("F", "F+F")]
        assert config.angle_deg == 90
        assert config.step == 10
        assert config.svg.precision == 2

    def test_missing_required_fields(self) -> None:
        # Missing axiom
        with pytest.raises(ConfigError):
            parse_config({"iterations": 1, "turtle": {}, "svg": {}})

        # Missing iterations defaults to 0
        config = parse_config({"axiom": "F", "turtle": {}, "svg": {}})
        assert config.iterations == 0

    def test_invalid_types(self) -> None:
        with pytest.raises(ConfigError):
            parse_config({"axiom": "F", "iterations": "1", "turtle": {}, "svg": {}})
        with pytest.raises(ConfigError):
            parse_config({"axiom": "F", "defines": {"a": "x"}})
        with pytest.raises(ConfigError):
            parse_config({"axiom": "F", "seed": True})

    def test_production_for_unknown_symbol(self) -> None:
        with pytest.raises(ConfigError):
            parse_config({"alphabet": "F", "axiom": "F", "productions": {"G": "F"}})

    def test_malformed_parametric_axiom(self) -> None:
        with pytest.raises(ConfigError):
            parse_config({"alphabet": "F", "axiom": "F(1"})

    def test_production_lists_keep_order(self) -> None:
        config = parse_config(
            {
                "alphabet": "ab",
                "axiom": "ba",
                "productions": {
                    "a": [{"successor": "b", "context": {"before": "b"}}, "a"],
                    "b": "a",
                },
            }
        )
        assert [key for key, _ in config.productions] == ["a", "a", "b"]
        system = build_system(config)
        assert len(system.productions["a"]) == 2

    def test_structural_successor_is_one_production(self) -> None:
        config = parse_config(
            {
                "alphabet": "AB",
                "axiom": "A",
                "productions": {"A": [{"symbol": "B", "params": [1]}]},
            }
        )
        assert len(config.productions) == 1

    def test_unknown_command_symbol(self) -> None:
        with pytest.raises(ConfigError):
            parse_config(
                {
                    "alphabet": "F",
                    "axiom": "F",
                    "turtle": {"commands": {"Q": {"type": "noop"}}},
                }
            )

    def test_precision_out_of_range(self) -> None:
        with pytest.raises(ConfigError):
            parse_config({"axiom": "F", "turtle": {}, "svg": {"precision": 15}})

    def test_svg_style(self) -> None:
        config = parse_config(
            {"axiom": "F", "svg": {"style": {"stroke": "red", "stroke_width": 2}}}
        )
        assert config.svg.style == SvgStyle(stroke="red", stroke_width=2.0)
        with pytest.raises(ConfigError):
            parse_config({"axiom": "F", "svg": {"style": {"colour": "red"}}})
        with pytest.raises(ConfigError):
            parse_config({"axiom": "F", "svg": {"width": 0}})


class TestParseAction:
    def test_defaults(self) -> None:
        turn = parse_action("+", {"type": "turn", "direction": 1})
        assert turn.angle == 1
        forward = parse_action("F", {"type": "forward", "draw": False})
        assert forward.step == 1
        assert forward.draw is False

    @pytest.mark.parametrize(
        "action",
        [
            {"type": "jump"},
            {"draw": True},
            {"type": "forward"},
            {"type": "turn", "direction": 2},
            {"type": "turn", "direction": 1, "angle": "wide"},
            {"type": "turn_abs"},
            "forward",
        ],
    )
    def test_invalid(self, action: Any) -> None:
        with pytest.raises(ConfigError):
            parse_action("X", action)


class TestTurtle:
    def setup_method(self) -> None:
        self.start = TurtleState(x=0, y=0, heading_deg=0)
        self.actions = {sym: parse_action(sym, a) for sym, a in _STANDARD_COMMANDS.items()}

    def _draw(
        self,
        phrase: str,
        *,
        alphabet: str = "Ff",
        actions: dict[str, Any] | None = None,
        default_action: Any = "noop",
        angle: float = 90,
    ) -> list[list[Point]]:
        system = LSystem(alphabet, axiom=phrase)
        turtle = Turtle(
            angle_deg=angle,
            step=10,
            start=self.start,
            actions=self.actions if actions is None else actions,
            default_action=default_action,
        )
        return interpret(system, turtle)

    def test_forward_draw(self) -> None:
        polylines = self._draw("F")
        assert len(polylines) == 1
        p0, p1 = polylines[0]
        assert p0[0] == pytest.approx(0)
        assert p0[1] == pytest.approx(0)
        assert p1[0] == pytest.approx(10)
        assert p1[1] == pytest.approx(0)

    def test_branching(self) -> None:
        # "]" restores (10,0) and starts a new polyline there, so the
        # trunk continuation is not joined to the branch tip.
        polylines = self._draw("F[+F]F")
        assert len(polylines) == 2

        pl1 = polylines[0]
        assert len(pl1) == 3
        assert pl1[1][0] == pytest.approx(10)
        assert pl1[1][1] == pytest.approx(0)
        assert pl1[2][0] == pytest.approx(10)
        assert pl1[2][1] == pytest.approx(10)

        pl2 = polylines[1]
        assert pl2[0][0] == pytest.approx(10)
        assert pl2[-1][0] == pytest.approx(20)

    def test_turn_abs(self) -> None:
        actions = {
            "A": parse_action("A", {"type": "turn_abs", "angle": 90}),
            "F": parse_action("F", {"type": "forward", "draw": True}),
        }
        polylines = self._draw("AF", alphabet="AF", actions=actions, angle=45)
        # heading 0 + 90 → forward lands on (0, 10)
        assert len(polylines) == 1
        assert polylines[0][1][0] == pytest.approx(0, abs=1e-9)
        assert polylines[0][1][1] == pytest.approx(10, abs=1e-9)

    def test_forward_move_starts_new_polyline(self) -> None:
        polylines = self._draw("FfF")
        assert len(polylines) == 2
        assert polylines[0][-1][0] == pytest.approx(10)
        assert polylines[1][0][0] == pytest.approx(20)
        assert polylines[1][-1][0] == pytest.approx(30)

    def test_parameters_override_magnitudes(self) -> None:
        polylines = self._draw("+(45)F(20)")
        end = polylines[0][-1]
        assert end[0] == pytest.approx(20 * math.cos(math.radians(45)))
        assert end[1] == pytest.approx(20 * math.sin(math.radians(45)))

    def test_pop_empty_stack(self) -> None:
        with pytest.raises(ConfigError):
            self._draw("]")

    def test_invalid_default_action(self) -> None:
        with pytest.raises(ConfigError):
            self._draw("F", default_action="typo")

    def test_default_action_covers_alphabet_only(self) -> None:
        # 'X' has no action and draws by default; '+' is ignored and unbound.
        polylines = self._draw("X+X", alphabet="X", actions={}, default_action="forward_draw")
        assert len(polylines) == 1
        assert polylines[0][-1][0] == pytest.approx(20)

    def test_interpret_resets_state(self) -> None:
        system = LSystem("Ff", axiom="F")
        turtle = Turtle(angle_deg=90, step=10, start=self.start, actions=self.actions)
        interpret(system, turtle)
        again = interpret(system, turtle)
        assert again == [[(0.0, 0.0), (10.0, 0.0)]]


class TestComputeBounds:
    def test_basic_bounds(self) -> None:
        polylines = [[(0.0, 5.0), (10.0, -2.0)], [(3.0, 8.0), (7.0, 1.0)]]
        assert compute_bounds(polylines) == (0.0, -2.0, 10.0, 8.0)

    def test_collinear_horizontal(self) -> None:
        polylines = [[(0.0, 0.0), (5.0, 0.0), (10.0, 0.0)]]
        min_x, min_y, max_x, max_y = compute_bounds(polylines)
        assert min_y == max_y == pytest.approx(0.0)
        assert (max_x - min_x) == pytest.approx(10.0)

    def test_empty_polylines_raises(self) -> None:
        with pytest.raises(ConfigError):
            compute_bounds([])


class TestSvg:
    def _render(self, polylines: list[list[Point]], title: str | None = None, **kw: Any) -> str:
        options = SvgOptions(**{"margin": 5, "precision": 2, "flip_y": False, **kw})
        return svg_document(polylines, options, title)

    def test_write_svg(self) -> None:
        polylines: list[list[Point]] = [[(0.0, 0.0), (10.0, 10.0)]]
        with tempfile.TemporaryDirectory() as tmpdir:
            out_path = os.path.join(tmpdir, "nested", "test.svg")
            write_svg(polylines, out_path=out_path, options=SvgOptions(margin=0, flip_y=False))
            with open(out_path) as f:
                content = f.read()
        assert "<svg" in content
        assert 'points="0,0 10,10"' in content

    def test_flip_y(self) -> None:
        content = self._render([[(0.0, 0.0), (10.0, 5.0)]], flip_y=True)
        assert 'transform="translate(' in content
        assert "scale(1,-1)" in content

    def test_background(self) -> None:
        content = self._render([[(0.0, 0.0), (10.0, 5.0)]], background="#ff0000")
        assert "<rect" in content
        assert 'fill="#ff0000"' in content

    def test_width_height(self) -> None:
        content = self._render([[(0.0, 0.0), (10.0, 5.0)]], width=200.0, height=100.0)
        assert 'width="200"' in content
        assert 'height="100"' in content

    def test_title_is_escaped(self) -> None:
        content = self._render([[(0.0, 0.0), (10.0, 5.0)]], title="My <L-System>")
        assert "My &lt;L-System&gt;" in content

    def test_style(self) -> None:
        content = self._render([[(0.0, 0.0), (10.0, 5.0)]], style=SvgStyle(stroke="red"))
        assert 'stroke="red"' in content

    def test_degenerate_bounds(self) -> None:
        with pytest.raises(ConfigError):
            self._render([[(0.0, 0.0), (10.0, 0.0)]], margin=0)


class TestLoadJson:
    def test_malformed_json(self) -> None:
        with tempfile.NamedTemporaryFile(suffix=".json", mode="w", delete=False) as tmp:
            tmp.write("{ not valid json }")
            tmp_path = tmp.name
        try:
            with pytest.raises(ConfigError):
                load_json(tmp_path)
        finally:
            os.unlink(tmp_path)


_EXAMPLE_DIR = os.path.join(os.path.dirname(__file__), "example")


def _example(name: str) -> str:
    return os.path.join(_EXAMPLE_DIR, name)


class TestCLI:
    def test_validate_command(self) -> None:
        with redirect_stdout(io.StringIO()) as out:
            assert main(["validate", _example("koch.json")]) == 0
        assert "polylines:" in out.getvalue()

    def test_render_command(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            out = os.path.join(tmpdir, "out.svg")
            assert main(["render", _example("koch.json"), out]) == 0
            assert os.path.exists(out)

    def test_expand_symbols_only(self) -> None:
        with redirect_stdout(io.StringIO()) as out:
            assert main(["expand", "--symbols-only", _example("signal.json")]) == 0
        assert out.getvalue() == "aaabaaaaa\n"

    def test_expand_is_reproducible(self) -> None:
        outputs = []
        for _ in range(2):
            with redirect_stdout(io.StringIO()) as out:
                assert main(["expand", _example("stochastic_plant.json")]) == 0
            outputs.append(out.getvalue())
        assert outputs[0] == outputs[1]

    def test_verbose_flag(self) -> None:
        with redirect_stdout(io.StringIO()):
            assert main(["-v", "expand", _example("signal.json")]) == 0

    def test_file_not_found_returns_error_code(self) -> None:
        with redirect_stderr(io.StringIO()):
            assert main(["render", "nonexistent_config.json", "out.svg"]) == 2

    def test_invalid_config_returns_error_code(self) -> None:
        with tempfile.NamedTemporaryFile(suffix=".json", mode="w", delete=False) as tmp:
            json.dump({"axiom": "F", "iterations": "bad", "turtle": {}, "svg": {}}, tmp)
            tmp_path = tmp.name
        try:
            with redirect_stderr(io.StringIO()):
                assert main(["validate", tmp_path]) == 2
        finally:
            os.unlink(tmp_path)

    def test_rewrite_error_returns_error_code(self) -> None:
        cfg = {"alphabet": "A", "axiom": "A(1)", "iterations": 1, "productions": {"A(x)": "A(x/0)"}}
        with tempfile.NamedTemporaryFile(suffix=".json", mode="w", delete=False) as tmp:
            json.dump(cfg, tmp)
            tmp_path = tmp.name
        try:
            with redirect_stderr(io.StringIO()) as err:
                assert main(["expand", tmp_path]) == 2
            assert "Config error" in err.getvalue()
        finally:
            os.unlink(tmp_path)


class TestExampleConfigs:
    """Regression tests: every example config must render without error."""

    def _render_example(self, filename: str) -> str:
        cfg = parse_config(load_json(_example(filename)))
        system = build_system(cfg)
        system.iterate()
        turtle = Turtle(
            angle_deg=cfg.angle_deg, step=cfg.step, start=cfg.start, actions=cfg.actions
        )
        return svg_document(interpret(system, turtle), cfg.svg, cfg.name)

    def test_koch(self) -> None:
        content = self._render_example("koch.json")
        assert "<svg" in content
        assert "<polyline" in content
        assert "viewBox=" in content

    def test_fractal_tree(self) -> None:
        content = self._render_example("fractal_tree.json")
        assert content.count("<polyline") > 1

    def test_stochastic_plant(self) -> None:
        content = self._render_example("stochastic_plant.json")
        assert "<polyline" in content

    def test_signal(self) -> None:
        content = self._render_example("signal.json")
        assert content.count("<polyline") == 2
