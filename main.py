#!/usr/bin/env python3
# mergeeats-dispatch/main.py
"""
Command-Line Interface for the MergeEats Order Consolidation Simulation.

Replays an order stream through the consolidation engine twice, once with
merging switched off (baseline) and once with it on, and prints a KPI
comparison. Also a quick way to exercise the engine without the dashboard.

Usage:
    python main.py                          # Run with defaults (dinner_rush)
    python main.py --scenario food_court    # Run a specific synthetic scenario
    python main.py --orders o.csv --restaurants r.csv --partners p.csv
    python main.py --max-group-size 3 --formation-window 5
    python main.py --verbose --log-level DEBUG

Exit Codes:
    0: Success
    1: Data loading error
    2: Simulation error
"""

from __future__ import annotations

import argparse
import logging
import sys
import traceback
from dataclasses import replace
from typing import Any, Dict, List, Optional

from mergedispatch import config
from mergedispatch.settings import EngineSettings
from mergedispatch.simulation import SCENARIOS, Scenario, Simulation, generate_scenario, load_scenario

MODES: List[str] = ["baseline", "consolidation"]


def print_header() -> None:
    """Print the CLI header."""
    print("\n" + "=" * 60)
    print("  MERGEEATS - Order Consolidation & Delivery Assignment")
    print("  Merged Dispatch vs. One-Order-Per-Run Baseline")
    print("=" * 60 + "\n")


def print_results_table(results: Dict[str, Dict[str, Any]]) -> None:
    """
    Print a formatted comparison table of results.

    Args:
        results: Dictionary mapping mode name to KPI results
    """
    metrics = [
        "Orders Delivered",
        "Groups Formed",
        "Avg Group Size",
        "Delivery Runs",
        "Trips Saved",  # THE KEY METRIC
        "Disbanded Groups",
        "Offers / Rejections",
        "Partners Used",
        "Fleet Distance",
        "Avg Delivery Time",
    ]

    modes = list(results.keys())

    print("\n" + "=" * 60)
    print("  FINAL RESULTS COMPARISON")
    print("=" * 60 + "\n")

    header = "| Metric                    |"
    for mode in modes:
        header += f" {mode.title():^15} |"
    print(header)

    separator = "|" + "-" * 27 + "|"
    for _ in modes:
        separator += "-" * 17 + "|"
    print(separator)

    for metric in metrics:
        row = f"| {metric:<25} |"
        for mode in modes:
            val = results[mode].get(metric, "N/A")
            if metric == "Trips Saved" and mode == "consolidation":
                row += f" **{val!s:^11}** |"
            else:
                row += f" {str(val):^15} |"
        print(row)

    print("\n" + "=" * 60)

    if "baseline" in results and "consolidation" in results:
        base_runs = results["baseline"].get("trips", 0)
        merged_runs = results["consolidation"].get("trips", 0)
        if base_runs > 0:
            saved = base_runs - merged_runs
            print(f"\n  Consolidation saved {saved} runs ({saved / base_runs * 100:.1f}% fewer)")
        base_km = results["baseline"].get("total_distance_km", 0.0)
        merged_km = results["consolidation"].get("total_distance_km", 0.0)
        if base_km > 0:
            print(f"  Fleet distance: {base_km:.1f} km -> {merged_km:.1f} km")

    print("=" * 60 + "\n")


def load_scenario_safe(args: argparse.Namespace) -> Optional[Scenario]:
    """
    Build or load the scenario with graceful error handling.

    CSV files win over the synthetic scenario when all three are given.

    Returns:
        The scenario, or None if error
    """
    files = (args.orders, args.restaurants, args.partners)
    if any(files):
        if not all(files):
            print("ERROR: --orders, --restaurants and --partners must be given together")
            return None
        try:
            scenario = load_scenario(*files)
        except (FileNotFoundError, ValueError) as e:
            print(f"ERROR: Failed to load data: {e}")
            return None
    else:
        if args.scenario not in SCENARIOS:
            print(f"ERROR: Unknown scenario '{args.scenario}'")
            print(f"Available scenarios: {', '.join(SCENARIOS.keys())}")
            return None
        scenario = generate_scenario(args.scenario, seed=args.seed)

    print(
        f"Loaded {len(scenario.orders)} orders, {len(scenario.restaurants)} restaurants "
        f"and {len(scenario.partners)} partners from '{scenario.name}'"
    )
    return scenario


def run_simulation_safe(
    scenario: Scenario,
    settings: EngineSettings,
    accept_probability: float,
    seed: int,
    verbose: bool = True,
) -> Optional[Dict[str, Any]]:
    """
    Run one simulation with error handling.

    Returns:
        Results dictionary or None if error
    """
    mode = "consolidation" if settings.consolidation_enabled else "baseline"
    try:
        sim = Simulation(scenario, settings, accept_probability=accept_probability, seed=seed)
        return sim.run(verbose=verbose)
    except Exception as e:
        print(f"ERROR: Simulation failed for '{mode}': {e}")
        traceback.print_exc()
        return None


def build_settings(args: argparse.Namespace) -> EngineSettings:
    settings = EngineSettings.from_config()
    overrides: Dict[str, Any] = {}
    if args.max_group_size is not None:
        overrides["max_group_size"] = args.max_group_size
    if args.formation_window is not None:
        overrides["formation_window_mins"] = args.formation_window
    if args.merge_radius is not None:
        overrides["merge_radius_km"] = args.merge_radius
    return replace(settings, **overrides)


def main() -> int:
    """
    Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = argparse.ArgumentParser(
        description="MergeEats Order Consolidation Simulation CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                                  # Default: dinner_rush, both modes
  python main.py --scenario stress                # Run stress test
  python main.py --modes consolidation            # Skip the baseline run
  python main.py --list-scenarios                 # Show available scenarios
        """
    )

    parser.add_argument(
        "--scenario", "-s",
        type=str,
        default="dinner_rush",
        help=f"Synthetic scenario (default: dinner_rush). Options: {', '.join(SCENARIOS.keys())}"
    )
    parser.add_argument("--orders", type=str, help="Orders CSV file")
    parser.add_argument("--restaurants", type=str, help="Restaurants CSV file")
    parser.add_argument("--partners", type=str, help="Partners CSV file")

    parser.add_argument(
        "--modes", "-m",
        nargs="+",
        default=MODES,
        help=f"Modes to run. Options: {', '.join(MODES)}"
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    parser.add_argument(
        "--accept-probability",
        type=float,
        default=None,
        help="Probability that a simulated partner accepts an offer"
    )
    parser.add_argument("--max-group-size", type=int, help="Maximum orders per group")
    parser.add_argument("--formation-window", type=float, help="Formation window in minutes")
    parser.add_argument("--merge-radius", type=float, help="Delivery merge radius in km")

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show detailed simulation progress"
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Engine log level (default: WARNING)"
    )
    parser.add_argument(
        "--list-scenarios",
        action="store_true",
        help="List available scenarios and exit"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    if args.list_scenarios:
        print("\nAvailable Scenarios:")
        print("-" * 50)
        for name, info in SCENARIOS.items():
            print(f"  {name:15} - {info['description']}")
        return 0

    print_header()

    scenario = load_scenario_safe(args)
    if scenario is None:
        return 1

    for mode in args.modes:
        if mode not in MODES:
            print(f"ERROR: Unknown mode '{mode}'")
            print(f"Available modes: {', '.join(MODES)}")
            return 1

    try:
        settings = build_settings(args)
    except ValueError as e:
        print(f"ERROR: Invalid settings: {e}")
        return 1

    accept_probability = args.accept_probability
    if accept_probability is None:
        accept_probability = config.PARTNER_ACCEPT_PROBABILITY

    print(f"\nRunning modes: {', '.join(args.modes)}")
    print("-" * 40)

    all_results: Dict[str, Dict[str, Any]] = {}
    for mode in args.modes:
        print(f"\n[{mode.upper()}] Starting simulation...")
        mode_settings = replace(settings, consolidation_enabled=(mode == "consolidation"))
        results = run_simulation_safe(
            scenario, mode_settings, accept_probability, args.seed, verbose=args.verbose
        )
        if results is None:
            print(f"WARN: Skipping '{mode}' due to error")
            continue
        all_results[mode] = results

    if not all_results:
        print("ERROR: No simulations completed successfully")
        return 2

    print_results_table(all_results)
    return 0


if __name__ == "__main__":
    sys.exit(main())
