"""
SlimMapper - locally injective surface parameterization

Main entry point
"""

import sys
import os
import logging
from pathlib import Path

# Ensure repository root is on sys.path so "src" is importable.
ROOT_DIR = Path(__file__).resolve().parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from src.slim.runtime_defaults import DEFAULTS
from src.slim.output_paths import layout_output_path, parameterization_output_path

_LOGGER = logging.getLogger(__name__)
DEFAULT_ITERATIONS = DEFAULTS.iterations
DEFAULT_RENDER_RESOLUTION = DEFAULTS.render_resolution
DEFAULT_ENERGY = "symmetric_dirichlet"
DEFAULT_MESH_UNIT = "mm"


def run_cli(argv: list[str] | None = None) -> int:
    """Run the command line interface; returns the process exit code."""
    args = list(sys.argv[1:] if argv is None else argv)

    from src.slim.logging_utils import setup_logging

    setup_logging()

    if not args:
        print_help()
        return 0

    cmd = args[0]

    if cmd in ('--help', '-h'):
        print_help()
        return 0

    if cmd == '--info' and len(args) > 1:
        return show_file_info(args[1])

    if cmd == '--param' and len(args) > 1:
        try:
            positional, energy, iterations = _parse_param_options(args[1:])
        except ValueError as e:
            print(f"Error: {e}")
            return 2
        output = positional[1] if len(positional) > 1 else None
        return parameterize_mesh(positional[0], output, energy=energy, iterations=iterations)

    if os.path.exists(cmd):
        return parameterize_mesh(cmd)

    print(f"Error: Unknown command or file not found: {cmd}")
    print("Use --help for usage information")
    return 2


def _parse_param_options(args: list[str]) -> tuple[list[str], str, int]:
    positional: list[str] = []
    energy = DEFAULT_ENERGY
    iterations = DEFAULT_ITERATIONS

    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ('--energy', '--iterations'):
            if i + 1 >= len(args):
                raise ValueError(f"{arg} needs a value")
            value = args[i + 1]
            if arg == '--energy':
                energy = value
            else:
                try:
                    iterations = int(value)
                except ValueError:
                    raise ValueError(f"--iterations must be an integer, got {value!r}") from None
                if iterations < 0:
                    raise ValueError("--iterations must be non-negative")
            i += 2
            continue
        if arg.startswith('--'):
            raise ValueError(f"Unknown option: {arg}")
        positional.append(arg)
        i += 1

    if not positional:
        raise ValueError("missing mesh file")
    return positional, energy, iterations


def print_help():
    from src.slim.energies import EnergyKind
    from src.slim.mesh_loader import MeshLoader

    print("=" * 60)
    print("SlimMapper - Locally Injective Surface Parameterization")
    print("=" * 60)
    print()
    print("Usage:")
    print("  python main.py <mesh_file>              # Parameterize with defaults")
    print("  python main.py --info <mesh_file>       # Show file info")
    print("  python main.py --param <mesh_file> [output.obj] [--energy NAME] [--iterations N]")
    print()
    print(f"Supported formats: {list(MeshLoader.SUPPORTED_FORMATS.keys())}")
    print(f"Energies: {[kind.value for kind in EnergyKind]}")
    print(f"Default iterations: {DEFAULT_ITERATIONS}")
    print()
    print("Examples:")
    print("  python main.py face.obj")
    print("  python main.py --param face.ply face_uv.obj --energy conformal --iterations 50")


def show_file_info(filepath: str) -> int:
    from src.slim.mesh_loader import MeshLoader

    print(f"\nFile Info: {filepath}")
    print("-" * 40)

    try:
        loader = MeshLoader(default_unit=DEFAULT_MESH_UNIT)
        info = loader.get_file_info(filepath)
    except (OSError, ValueError) as e:
        print(f"  Error: {e}")
        return 1

    for key, value in info.items():
        print(f"  {key}: {value}")
    return 0


def parameterize_mesh(
    filepath: str,
    output_path: str | None = None,
    *,
    energy: str = DEFAULT_ENERGY,
    iterations: int = DEFAULT_ITERATIONS,
) -> int:
    """Load, parameterize, save the flat mesh and its preview image."""
    from src.slim.energies import EnergyKind
    from src.slim.layout_renderer import LayoutRenderer
    from src.slim.linear_solvers import SolveFailedError
    from src.slim.mesh_loader import MeshLoader, save_parameterization
    from src.slim.parameterizer import SlimParameterizer
    from src.slim.state import InvalidInputError

    print(f"\n{'='*60}")
    print(f"Parameterizing: {filepath}")
    print(f"{'='*60}")

    try:
        kind = EnergyKind.parse(energy)

        print("\n[1/4] Loading mesh...")
        loader = MeshLoader(default_unit=DEFAULT_MESH_UNIT)
        mesh = loader.load(filepath)
        print(f"      Vertices: {mesh.n_vertices:,}")
        print(f"      Faces: {mesh.n_faces:,}")
        print(f"      Surface Area: {mesh.surface_area:,.2f} {mesh.unit}^2")

        print(f"\n[2/4] Minimizing {kind.value} energy ({iterations} iterations)...")
        parameterizer = SlimParameterizer(energy=kind, iterations=iterations)
        result = parameterizer.parameterize(mesh)
        if result.energy_history:
            print(f"      Energy: {result.energy_history[0]:.6g} -> {result.final_energy:.6g}")
        exhausted = sum(1 for r in result.reports if r.status == "line_search_exhausted")
        if exhausted:
            print(f"      Line search exhausted in {exhausted} iteration(s)")
        print(f"      Layout size: {result.width:.2f} x {result.height:.2f} {mesh.unit}")

        print("\n[3/4] Saving parameterization...")
        mesh_path = parameterization_output_path(filepath, output_path)
        save_parameterization(result.uv, result.faces, mesh_path)
        print(f"      Saved: {mesh_path}")

        print("\n[4/4] Rendering layout preview...")
        image = LayoutRenderer().render(result, width_pixels=DEFAULT_RENDER_RESOLUTION)
        image_path = layout_output_path(filepath, output_path)
        image.save(str(image_path), include_scale_bar=True)
        print(f"      Saved: {image_path}")

    except (InvalidInputError, SolveFailedError, ValueError, OSError) as e:
        _LOGGER.error("Parameterization failed for %s", filepath, exc_info=True)
        print(f"\nError: {e}")
        return 1

    print(f"\n{'='*60}")
    print("Done!")
    print(f"{'='*60}")
    return 0


if __name__ == '__main__':
    sys.exit(run_cli())
