"""
Command line entry point.

    cable-pose solve input.json -o output.json
    cable-pose serve --port 8765
    cable-pose demo
    cable-pose write-config
"""
import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace

import numpy as np

from cable_pose import rig
from cable_pose.config import Config
from cable_pose.errors import PoseSolveError, InvalidInput
from cable_pose.kinematics import synthesize_cable_lengths
from cable_pose.request import SolveRequest
from cable_pose.solver import solve


def write_json(obj, output_path):
    text = json.dumps(obj, indent=2)
    if output_path is None:
        print(text)
    else:
        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(text)

def run_solve(args, config):
    settings = config.solver
    if args.central_diff:
        settings = replace(settings, jacobian_method='central')
    try:
        with open(args.input, 'r', encoding='utf-8') as f:
            request = SolveRequest.from_json(f.read())
        logging.info(f'Solving for {request.n_cables} cables from {args.input}')
        result = solve(request, settings)
    except PoseSolveError as e:
        logging.error(f'{e.kind}: {e}')
        write_json({'error': e.to_dict()}, args.output)
        return 1
    logging.info(f'{result.status} after {result.iterations} iterations, error={result.error:.6g}')
    write_json(result.to_dict(), args.output)
    return 0

def run_demo(args, config):
    """Solve the rig at a known pose from the default initial guess"""
    lengths = synthesize_cable_lengths(rig.anchors, rig.attachments, rig.demo_pose)
    request = SolveRequest(rig.anchors, rig.attachments, lengths, rig.default_initial_guess)
    try:
        result = solve(request, config.solver)
    except PoseSolveError as e:
        logging.error(f'{e.kind}: {e}')
        return 1
    logging.info(f'true pose      {np.round(rig.demo_pose, 6)}')
    logging.info(f'estimated pose {np.round(result.pose, 6)}')
    logging.info(f'{result.status} after {result.iterations} iterations, error={result.error:.3g}')
    return 0

def run_serve(args, config):
    from cable_pose.server import PoseSolverServer
    server = PoseSolverServer(config)
    asyncio.run(server.main(host=args.host, port=args.port))
    return 0

def run_write_config(args, config):
    config.write()
    logging.info(f'Wrote configuration to {config.path}')
    return 0

def build_parser():
    parser = argparse.ArgumentParser(prog='cable-pose', description='Estimate the pose of a cable suspended platform')
    parser.add_argument('--config', default=None, help='path to a configuration json file')
    parser.add_argument('-v', '--verbose', action='store_true', help='log every solver iteration')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('solve', help='solve a request json file')
    p.add_argument('input', help='request with anchors, attachments, cableLengths and initialGuess')
    p.add_argument('-o', '--output', default=None, help='where to write the result. stdout if omitted')
    p.add_argument('--central-diff', action='store_true', help='use a finite difference jacobian')
    p.set_defaults(func=run_solve)

    p = sub.add_parser('serve', help='run the websocket solver service')
    p.add_argument('--host', default=None)
    p.add_argument('--port', type=int, default=None)
    p.set_defaults(func=run_serve)

    p = sub.add_parser('demo', help='solve the built in rig at a known pose')
    p.set_defaults(func=run_demo)

    p = sub.add_parser('write-config', help='write the current configuration to the config file')
    p.set_defaults(func=run_write_config)
    return parser

def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    try:
        config = Config(args.config)
    except InvalidInput as e:
        logging.error(f'Bad configuration: {e}')
        return 1
    return args.func(args, config)

if __name__ == "__main__":
    sys.exit(main())
