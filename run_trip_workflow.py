#!/usr/bin/env python3
"""
Run the trip modelling workflow.

Samples trips, explores correlations, fits xgboost and linear models,
exports them as portable YAML specs and SQL, and checks that the database
reproduces the in-memory predictions.
"""

import argparse
import json
import sys
from pathlib import Path

# Add src to path for imports
sys.path.append('src')

from tripmodel.config import ConfigurationError, load_workflow_config
from tripmodel.utils.logging import setup_workflow_logging
from tripmodel.workflow import TripModelWorkflow


def main() -> bool:
    """Execute the workflow."""
    parser = argparse.ArgumentParser(description="Taxi trip modelling workflow")
    parser.add_argument("--config", default=None,
                        help="Workflow YAML config (default: config/workflow/base.yaml)")
    parser.add_argument("--environment", default="development",
                        choices=["development", "staging", "production"],
                        help="Environment preset")
    parser.add_argument("--results", default="models/workflow_results.json",
                        help="Where to write the JSON run report")
    args = parser.parse_args()

    try:
        config = load_workflow_config(args.config, args.environment)
    except ConfigurationError as e:
        print(f"❌ Invalid configuration: {e}")
        return False

    setup_workflow_logging(
        level=config.monitoring.log_level,
        log_format=config.monitoring.log_format,
        log_dir=config.monitoring.log_dir,
        enable_file=config.monitoring.enable_file_logging
    )

    print(f"🚀 Running trip workflow ({config.environment})")

    try:
        result = TripModelWorkflow(config).run()
    except Exception as e:
        print(f"\n❌ WORKFLOW FAILED: {e}")
        import traceback
        traceback.print_exc()
        return False

    print("\n✅ WORKFLOW COMPLETE")
    print("=" * 50)
    print(f"Rows sampled: {result.sample.get('rows_returned')}")
    for name, report in result.validation.items():
        status = "match" if report["passed"] else "MISMATCH"
        print(f"  {name}: {status} (max diff {report['max_absolute_difference']:.3e})")

    print("\n📊 Stage Performance:")
    for stage, duration in result.stage_durations.items():
        print(f"  {stage}: {duration:.2f}s")

    results_file = Path(args.results)
    results_file.parent.mkdir(parents=True, exist_ok=True)
    with open(results_file, 'w') as f:
        json.dump(result.to_dict(), f, indent=2, default=str)

    print(f"\n💾 Results saved to: {results_file}")

    return result.passed


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
