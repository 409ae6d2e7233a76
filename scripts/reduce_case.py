"""
Reduce TLC experiment cases to Nusselt number maps using the tlc library.

Every configuration JSON found in the case directory is opened, reduced
with the filter/interpolation/iteration settings below, and its Nusselt
map, plot and configuration are written under the case's save directory.
A summary of all cases is written to ``<case_dir>/summary.txt``.

Usage:
    python scripts/reduce_case.py [case_dir] [workers]
"""

import csv
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from tlc import (
    FilterMethod,
    InterpMethod,
    IterationMethod,
    TLCData,
    TLCError,
    WorkerPool,
)


########################################################################################################################
# Configuration
########################################################################################################################

@dataclass
class ReductionConfig:
    """Settings applied to every case of a batch."""
    case_dir: str = "./cases/config"
    pattern: str = "*.json"
    workers: Optional[int] = None
    filter_method: Optional[FilterMethod] = None  # None = keep each case's own setting
    interp_method: Optional[InterpMethod] = None
    iteration_method: Optional[IterationMethod] = None
    vrange: Optional[List[float]] = None  # Nu color range, None = (0.6, 2.0) x mean
    skip_cases: List[str] = field(default_factory=list)  # Case names to skip


def write_results(output_dict: dict, path: str) -> str:
    """Write results to space-delimited text file."""
    csv.register_dialect('gnuplot_spaces', delimiter=' ', skipinitialspace=True)

    with open(path, 'w', newline='') as f:
        fieldnames = list(output_dict.keys())
        writer = csv.DictWriter(f, fieldnames=fieldnames, dialect='gnuplot_spaces')
        writer.writeheader()

        n_rows = len(list(output_dict.values())[0])
        for i in range(n_rows):
            row = {key: output_dict[key][i] for key in fieldnames}
            writer.writerow(row)

    return path


########################################################################################################################
# Processing
########################################################################################################################

def reduce_case(config_path: Path, settings: ReductionConfig, pool: WorkerPool) -> Optional[float]:
    """Reduce one case, returning its mean Nusselt number."""
    print(f"\nLoading: {config_path.name}")
    data = TLCData.from_path(config_path, pool=pool)
    config = data.config

    if config.case_name in settings.skip_cases:
        print(f"  Skipping {config.case_name}")
        return None

    print(f"  Video: {config.video_path}")
    print(f"  Frames: {config.frame_num} (start {config.start_frame}), DAQ start row: {config.start_row}")
    print(f"  Frame rate: {config.frame_rate} fps")
    print(f"  Region: {config.region_shape} at {config.top_left_pos}")
    print(f"  Thermocouples: {len(config.thermocouples)}")

    if settings.filter_method is not None:
        data.set_filter_method(settings.filter_method)
    if settings.interp_method is not None:
        data.set_interp_method(settings.interp_method)
    if settings.iteration_method is not None:
        data.set_iteration_method(settings.iteration_method)

    with data:
        t0 = time.perf_counter()
        nu_nan_mean = data.get_nu_nan_mean()
        print(f"  Mean Nu: {nu_nan_mean:.3f} ({time.perf_counter() - t0:.1f} s)")

        vrange = tuple(settings.vrange) if settings.vrange else None
        print(f"  Saved data: {data.save_nu()}")
        data.plot_nu(vrange)
        print(f"  Saved plot: {config.plots_path}")
        print(f"  Saved config: {data.save_config()}")
    return nu_nan_mean


def main():
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    settings = ReductionConfig()
    if len(sys.argv) > 1:
        settings.case_dir = sys.argv[1]
    if len(sys.argv) > 2:
        settings.workers = int(sys.argv[2])
    settings.filter_method = FilterMethod.median(window_size=10)

    pool = WorkerPool(settings.workers)
    print(f"Running with {pool.size} worker threads")

    config_paths = sorted(Path(settings.case_dir).glob(settings.pattern))
    if not config_paths:
        print(f"No case configurations found in {settings.case_dir}")
        return

    results = {'case': [], 'nu_nan_mean': []}
    for config_path in config_paths:
        try:
            nu_nan_mean = reduce_case(config_path, settings, pool)
        except TLCError as err:
            print(f"  Failed: {err}")
            continue
        if nu_nan_mean is not None:
            results['case'].append(config_path.stem)
            results['nu_nan_mean'].append(f"{nu_nan_mean:.6g}")

    if results['case']:
        summary_path = write_results(results, str(Path(settings.case_dir) / "summary.txt"))
        print(f"\nResults summary: {summary_path}")
        print(f"  Cases reduced: {len(results['case'])}/{len(config_paths)}")
    print("\nProcessing complete!")


if __name__ == "__main__":
    main()
