"""Scalar Kalman filtering of a stream of measures.

Reads one decimal measure per line on stdin and writes the filtered state estimate on stdout (one per line).
The system is scalar (dim_x = dim_u = dim_y = 1) and the input is null.

Example:
    $ seq 1 10 | torch-lkf -R 4 -Q 0.1
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Iterable, TextIO

from .errors import SingularMatrixError
from .kalman_filter import FilterState, KalmanFilter, LTISystem, NoiseModel, SingularPolicy

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="torch-lkf",
        description="Process measures from standard input with a scalar Kalman filter, writing to standard output.",
    )
    parser.add_argument("-x", default=0.0, type=float, help="Initial state estimate (x0)")
    parser.add_argument("-P", default=1.0, type=float, help="Initial error covariance estimate (P0)")
    parser.add_argument("-A", default=1.0, type=float, help="A system parameter")
    parser.add_argument("-B", default=0.0, type=float, help="B system parameter")
    parser.add_argument("-C", default=1.0, type=float, help="C system parameter")
    parser.add_argument("-D", default=0.0, type=float, help="D system parameter")
    parser.add_argument("-Q", default=1.0, type=float, help="Q covariance parameter")
    parser.add_argument("-R", default=100.0, type=float, help="R covariance parameter")
    parser.add_argument("--strict", action="store_true", help="Fail on a singular innovation covariance")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log each filter step")
    return parser


def filter_stream(kf: KalmanFilter, state: FilterState, lines: Iterable[str], out: TextIO) -> FilterState:
    """Filter each measure of ``lines`` and write the estimates to ``out``.

    Blank lines are skipped.

    Raises:
        ValueError: If a line is not a number.
    """
    for line_number, line in enumerate(lines, start=1):
        line = line.strip()  # noqa: PLW2901
        if not line:
            continue

        try:
            measure = float(line)
        except ValueError as exc:
            raise ValueError(f"Line {line_number}: invalid measure {line!r}") from exc

        state = kf.tick(state, measure).state
        out.write(f"{state.mean[0, 0]:f}\n")

    return state


def main(argv: list[str] | None = None, stdin: TextIO | None = None, stdout: TextIO | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    kf = KalmanFilter(
        LTISystem.from_values(args.A, args.B, args.C, args.D),
        NoiseModel.from_values(args.Q, args.R),
        singular_policy=SingularPolicy.STRICT if args.strict else SingularPolicy.DEGRADE,
    )
    logger.debug("%s", kf)
    state = FilterState.from_values(args.x, args.P)

    try:
        filter_stream(kf, state, stdin or sys.stdin, stdout or sys.stdout)
    except (ValueError, SingularMatrixError) as exc:
        logger.error("%s", exc)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
