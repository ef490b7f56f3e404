import argparse
import json
import logging
import sys
import time

from tivasim.core.comparator import compare_methods
from tivasim.core.engine import SimulationOrchestrator
from tivasim.core.errors import SafetyThresholdError, TivaSimError
from tivasim.core.optimizer import ProtocolOptimizer
from tivasim.core.recorder import adjustments_to_dataframe, points_to_dataframe
from tivasim.core.state import ProtocolSettings, SimulationConfig, config_from_dict
from tivasim.core.timeline import DoseEvent, DoseTimeline
from tivasim.core.units import convert_rate
from tivasim.patient.patient import Patient
from tivasim.patient.pk_models import PKParameterSet

# Typical adult remimazolam parameters, used when the config has no "pk" block.
EXAMPLE_PK = dict(v1=3.57, v2=11.3, v3=27.2, cl=1.03, q2=1.10, q3=0.401, ke0=0.22)


def load_config(path):
    if not path:
        return {}
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        print(f"Error loading config: {e}")
        sys.exit(1)


def build_inputs(config_data):
    patient = Patient(**config_data.get("patient", {}))
    pk = PKParameterSet(**config_data.get("pk", EXAMPLE_PK))
    return patient, pk


def run_simulate(args):
    """Simulate a dose timeline and print the reporting grid."""
    config_data = load_config(args.config)
    patient, pk = build_inputs(config_data)
    sim_config = config_from_dict(SimulationConfig, config_data.get("simulation", {}))
    if args.method:
        sim_config = config_from_dict(SimulationConfig, {**config_data.get("simulation", {}), "method": args.method})

    events = config_data.get("events") or [{"time": 0.0, "bolus": args.bolus, "rate": args.rate}]
    timeline = DoseTimeline(
        DoseEvent(
            e["time"],
            e.get("bolus", 0.0),
            convert_rate(e.get("rate", 0.0), args.rate_unit, "mg/kg/hr", patient.weight),
        )
        for e in events
    )

    print(f"Starting simulation ({sim_config.method.value}, {len(timeline)} dose events)...")
    print(f"Total bolus: {timeline.total_bolus():.1f} mg | Peak rate: {timeline.max_rate():.3f} mg/kg/hr")
    start_real = time.time()
    orchestrator = SimulationOrchestrator(pk, patient, sim_config)
    try:
        result = orchestrator.run(timeline, args.duration)
    except SafetyThresholdError as e:
        print(f"SAFETY: {e}")
        result = e.result
    frame = points_to_dataframe(result.points)
    print(frame.iloc[:: max(1, args.every)].to_string(index=False, float_format=lambda x: f"{x:.3f}"))
    if result.fallback_applied:
        print(f"Fallback applied: {result.fallback_reason}")
    print(f"Method: {result.calculation_method} | Max Cp: {result.max_plasma:.3f} | Max Ce: {result.max_effect:.3f}")
    print(f"Completed in {time.time() - start_real:.2f}s real time.")


def run_optimize(args):
    """Optimize a bolus + infusion protocol and print the step-down schedule."""
    config_data = load_config(args.config)
    patient, pk = build_inputs(config_data)
    settings = config_from_dict(ProtocolSettings, config_data.get("protocol", {}))
    if args.predictive:
        settings = config_from_dict(ProtocolSettings, {**config_data.get("protocol", {}), "predictive": True})

    optimizer = ProtocolOptimizer(pk, patient, settings)
    try:
        result = optimizer.run(args.target, args.bolus, args.target_time)
    except SafetyThresholdError as e:
        print(f"SAFETY: {e}")
        result = e.result

    search = result.rate_search
    print(f"Target Ce: {result.target_ce:.2f} ug/mL | Bolus: {result.bolus_mg:.1f} mg")
    print(f"Optimized rate: {result.optimized_rate:.3f} mg/kg/hr "
          f"(predicted Ce {search.predicted_ce:.3f}, converged={search.converged})")
    if result.adjustments:
        print(adjustments_to_dataframe(result.adjustments).to_string(index=False, float_format=lambda x: f"{x:.3f}"))
    perf = result.performance
    print(f"Accuracy: {perf.target_accuracy:.1f}% | In target: {perf.time_in_target:.1f}% | "
          f"Stability: {perf.stability_index:.1f} | Score: {perf.overall_score:.1f}/100")


def run_compare(args):
    """Report integrator accuracy against the exact solution."""
    config_data = load_config(args.config)
    patient, pk = build_inputs(config_data)
    results = compare_methods(pk, patient, args.bolus, args.rate, args.duration or 60.0, args.dt)
    for r in results:
        print(f"{r.method.value:<13} max err {r.max_abs_error:.3e} | rms {r.rms_error:.3e} | steps {r.steps}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="TivaSim - Remimazolam TCI dosing engine")
    parser.add_argument("--config", type=str, help="Path to JSON configuration file")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    sub = parser.add_subparsers(dest="command", required=True)

    sim = sub.add_parser("simulate", help="Simulate a dose timeline")
    sim.add_argument("--method", choices=["Euler", "RK4", "Adaptive RK4"], help="Integrator override")
    sim.add_argument("--bolus", type=float, default=6.0, help="Bolus at t=0 (mg) when no events are configured")
    sim.add_argument("--rate", type=float, default=1.0, help="Rate from t=0 when no events are configured")
    sim.add_argument("--rate-unit", default="mg/kg/hr",
                     help="Unit of --rate and configured event rates (mg/kg/hr, mg/kg/min, mg/hr, mg/min)")
    sim.add_argument("--duration", type=float, help="Horizon in minutes (default: last event + 120)")
    sim.add_argument("--every", type=int, default=10, help="Print every Nth reporting sample")
    sim.set_defaults(func=run_simulate)

    opt = sub.add_parser("optimize", help="Optimize a step-down protocol")
    opt.add_argument("--target", type=float, default=1.0, help="Target Ce (ug/mL)")
    opt.add_argument("--bolus", type=float, help="Bolus (mg); recommended dose if omitted")
    opt.add_argument("--target-time", type=float, help="Time to reach target (min)")
    opt.add_argument("--predictive", action="store_true", help="Enable look-ahead reductions")
    opt.set_defaults(func=run_optimize)

    cmp_ = sub.add_parser("compare", help="Compare integrators against the exact solution")
    cmp_.add_argument("--bolus", type=float, default=6.0)
    cmp_.add_argument("--rate", type=float, default=1.0)
    cmp_.add_argument("--duration", type=float, default=60.0)
    cmp_.add_argument("--dt", type=float, default=0.1)
    cmp_.set_defaults(func=run_compare)

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    try:
        args.func(args)
    except TivaSimError as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
