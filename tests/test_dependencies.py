"""
Tests for the dependency graph and the packaged module catalog.
"""

import itertools
from pathlib import Path

import pytest

from labrat.core.config.catalog_loader import load_catalog, load_catalog_file
from labrat.core.errors import ConfigError, CyclicDependency
from labrat.core.models.module import ModuleSpec
from labrat.core.services.dependencies import DependencyGraph, UnmetDependency


def _graph(**requires: list[str]) -> DependencyGraph:
    return DependencyGraph({
        name: ModuleSpec(name=name, requires=deps) for name, deps in requires.items()
    })


class TestResolveOrder:
    def test_soft_deps_never_ordered(self):
        """neovim only recommends ripgrep and fd."""
        graph = DependencyGraph({
            "neovim": ModuleSpec(name="neovim", recommends=["ripgrep", "fd"]),
            "ripgrep": ModuleSpec(name="ripgrep"),
            "fd": ModuleSpec(name="fd"),
        })
        assert graph.resolve_order(["neovim"]) == ["neovim"]

    def test_packaged_neovim(self):
        graph = DependencyGraph.from_catalog()
        assert graph.resolve_order(["neovim"]) == ["neovim"]
        assert "ripgrep" in graph.soft_deps("neovim")

    def test_chain(self, graph: DependencyGraph):
        assert graph.resolve_order(["app"]) == ["base", "lib", "app"]

    def test_deduplicated_first_seen(self, graph: DependencyGraph):
        assert graph.resolve_order(["vim", "app", "lib", "vim"]) == ["vim", "base", "lib", "app"]

    def test_every_dep_before_dependent(self):
        graph = _graph(
            a=["b", "c"], b=["d"], c=["d", "e"], d=[], e=["f"], f=[], g=["a", "f"],
        )
        for size in (1, 2, 3):
            for request in itertools.permutations(graph.names(), size):
                order = graph.resolve_order(request)
                assert len(order) == len(set(order))
                for module in order:
                    for dep in graph.direct_deps(module):
                        assert order.index(dep) < order.index(module)
                assert set(request) <= set(order)

    def test_cycle_raises_with_path(self):
        graph = _graph(a=["b"], b=["c"], c=["a"])
        with pytest.raises(CyclicDependency) as exc:
            graph.resolve_order(["a"])
        assert exc.value.cycle == ["a", "b", "c", "a"]
        assert exc.value.code == 6

    def test_self_cycle(self):
        with pytest.raises(CyclicDependency):
            _graph(a=["a"]).resolve_order(["a"])

    def test_lenient_mode_truncates_cycle(self):
        graph = _graph(a=["b"], b=["a"])
        assert graph.resolve_order(["a"], strict=False) == ["b", "a"]

    def test_diamond_is_not_a_cycle(self):
        graph = _graph(top=["l", "r"], l=["bottom"], r=["bottom"], bottom=[])
        assert graph.resolve_order(["top"]) == ["bottom", "l", "r", "top"]

    def test_reverse_order(self, graph: DependencyGraph):
        assert graph.reverse_order(["app"]) == ["app", "lib", "base"]

    def test_auto_add(self, graph: DependencyGraph, caplog):
        caplog.set_level("INFO")
        assert graph.auto_add_dependencies(["app"]) == ["base", "lib", "app"]
        assert "base, lib" in caplog.text


class TestValidation:
    def test_conflict_declared_one_side(self, graph: DependencyGraph):
        assert graph.validate_conflicts(["vim", "emacs"]) == [("vim", "emacs")]
        assert graph.validate_conflicts(["emacs", "vim"]) == [("vim", "emacs")]
        assert graph.validate_conflicts(["vim", "app"]) == []

    def test_conflicts_iff_declared(self):
        graph = DependencyGraph({
            "a": ModuleSpec(name="a", conflicts=["b"]),
            "b": ModuleSpec(name="b"),
            "c": ModuleSpec(name="c", conflicts=["a"]),
            "d": ModuleSpec(name="d"),
        })
        for x, y in itertools.permutations(graph.names(), 2):
            declared = y in graph.conflicts(x) or x in graph.conflicts(y)
            assert bool(graph.validate_conflicts([x, y])) == declared

    def test_mutual_conflict_reported_once(self):
        graph = DependencyGraph({
            "a": ModuleSpec(name="a", conflicts=["b"]),
            "b": ModuleSpec(name="b", conflicts=["a"]),
        })
        assert graph.validate_conflicts(["a", "b"]) == [("a", "b")]

    def test_unmet_dependencies(self, graph: DependencyGraph):
        unmet = graph.validate_dependencies(["app"], is_installed=lambda m: False)
        assert unmet == [UnmetDependency("app", "lib")]
        assert "app requires lib" in str(unmet[0])

        assert graph.validate_dependencies(["app", "lib"], is_installed=lambda m: m == "base") == []

    def test_suggest_soft_deps(self, graph: DependencyGraph):
        assert graph.suggest_soft_deps("app", lambda m: False, lambda cmd: False) == ["extra"]
        assert graph.suggest_soft_deps("app", lambda m: m == "extra", lambda cmd: False) == []
        assert graph.suggest_soft_deps("app", lambda m: False, lambda cmd: cmd == "extra") == []

    def test_suggest_checks_command(self):
        graph = DependencyGraph({
            "neovim": ModuleSpec(name="neovim", recommends=["ripgrep"]),
            "ripgrep": ModuleSpec(name="ripgrep", command="rg"),
        })
        checked = []
        graph.suggest_soft_deps("neovim", lambda m: False, lambda cmd: checked.append(cmd) or True)
        assert checked == ["rg"]

    def test_unknown(self, graph: DependencyGraph):
        assert graph.unknown(["app", "nope", "nope", "zzz"]) == ["nope", "zzz"]


class TestViews:
    def test_dependents(self, graph: DependencyGraph):
        assert graph.dependents("lib", ["app", "base", "vim"]) == ["app"]
        assert graph.dependents("vim", ["app"]) == []

    def test_dependency_tree(self, graph: DependencyGraph):
        tree = graph.dependency_tree("app", is_installed=lambda m: m == "base")
        assert tree["name"] == "app"
        assert tree["installed"] is False
        lib = tree["requires"][0]
        assert lib["name"] == "lib"
        assert lib["requires"][0] == {"name": "base", "installed": True, "requires": []}

    def test_dependency_tree_marks_cycle(self):
        tree = _graph(a=["b"], b=["a"]).dependency_tree("a")
        assert tree["requires"][0]["requires"][0]["cycle"] is True

    def test_module_info(self, graph: DependencyGraph):
        info = graph.module_info("shelly", lambda m: True, lambda m: "2.0")
        assert info["known"] is True
        assert info["command"] == "shy"
        assert info["installed"] is True
        assert info["version"] == "2.0"
        assert info["description"] == "No description"

    def test_module_info_unknown(self, graph: DependencyGraph):
        info = graph.module_info("nope")
        assert info["known"] is False
        assert info["installed"] is False


class TestCatalog:
    def test_packaged_catalog_loads(self):
        catalog = load_catalog()
        assert {"tmux", "zsh", "neovim", "fzf", "ripgrep"} <= set(catalog)
        assert catalog["neovim"].binary == "nvim"
        assert catalog["tmux"].binary == "tmux"

    def test_packaged_catalog_has_no_cycles(self):
        graph = DependencyGraph.from_catalog()
        graph.resolve_order(graph.names())

    def test_extra_catalog_overrides(self, tmp_path: Path):
        extra = tmp_path / "catalog.yml"
        extra.write_text(
            "modules:\n"
            "  - name: tmux\n"
            "    category: terminal\n"
            "    description: custom\n"
            "  - name: mytool\n"
            "    category: utils\n"
            "    requires: tmux, fzf\n"
        )
        catalog = load_catalog(extra)
        assert catalog["tmux"].description == "custom"
        assert catalog["mytool"].requires == ["tmux", "fzf"]

    def test_unknown_reference_warns(self, tmp_path: Path, caplog):
        caplog.set_level("WARNING")
        extra = tmp_path / "catalog.yml"
        extra.write_text("modules:\n  - name: x\n    requires: [ghost]\n")
        load_catalog(extra)
        assert "unknown module 'ghost'" in caplog.text

    def test_invalid_yaml(self, tmp_path: Path):
        bad = tmp_path / "catalog.yml"
        bad.write_text("modules: [unclosed\n")
        with pytest.raises(ConfigError):
            load_catalog_file(bad)

    def test_invalid_shape(self, tmp_path: Path):
        bad = tmp_path / "catalog.yml"
        bad.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            load_catalog_file(bad)

    def test_invalid_entry(self, tmp_path: Path):
        bad = tmp_path / "catalog.yml"
        bad.write_text("modules:\n  - name: ''\n")
        with pytest.raises(ConfigError):
            load_catalog_file(bad)

    def test_command_with_shell_syntax_rejected(self, tmp_path: Path):
        bad = tmp_path / "catalog.yml"
        bad.write_text('modules:\n  - name: x\n    command: "x; rm -rf ~"\n')
        with pytest.raises(ConfigError):
            load_catalog_file(bad)
