"""
Websocket service that solves pose requests.

Messages are JSON objects. Supported requests:
    {"optimize": {anchors, attachments, cableLengths, initialGuess}, "notes": "..."}
        -> {"optimize": {pose, error, iterations, residuals, status, initialError}, "run_id": "..."}
        or {"error": {kind, message, ...}, "run_id": "..."}
    {"runs": {}} -> {"runs": [run, ...]} newest first
    {"run": "<id>"} -> {"run": run or null}

Each solve runs in a worker thread with its own model and solver state.
A solve that exceeds the configured timeout is asked to stop at its next iteration
and reported as a Timeout error carrying the best pose it had reached.
"""
import asyncio
import json
import logging
import signal
import threading

import websockets
from websockets.exceptions import (
    ConnectionClosedOK,
    ConnectionClosedError,
)

from cable_pose.config import Config
from cable_pose.errors import PoseSolveError, InvalidInput
from cable_pose.request import SolveRequest
from cable_pose.run_store import RunStore, RunRecord, SUCCESS, FAILED, TIMEOUT
from cable_pose.solver import solve, MAX_ITERATIONS, CANCELLED


class PoseSolverServer:
    def __init__(self, config=None):
        self.config = config if config is not None else Config()
        self.runs = RunStore(self.config.server.history_size)
        self.solve_timeout = self.config.server.solve_timeout
        self.run_server = True
        self.stopped = None

    async def optimize(self, payload, notes=None):
        """Validate and solve one request, record it, and return the response message"""
        try:
            request = SolveRequest.from_dict(payload)
        except InvalidInput as e:
            logging.warning(f'Rejected request: {e}')
            record = self.runs.add(RunRecord(payload, {'error': e.to_dict()}, FAILED, notes))
            return {'error': e.to_dict(), 'run_id': record.id}

        stop = threading.Event()
        # note that you must always get the result from something run with asyncio.to_thread or it will silently pass exceptions.
        task = asyncio.create_task(asyncio.to_thread(solve, request, self.config.solver, stop.is_set))
        timed_out = False
        try:
            try:
                result = await asyncio.wait_for(asyncio.shield(task), self.solve_timeout)
            except asyncio.TimeoutError:
                logging.warning(f'Solve exceeded {self.solve_timeout} seconds, asking it to stop')
                timed_out = True
                stop.set()
                # the solver checks the stop flag between iterations, so this returns promptly.
                # a solve that finished on its own just before the flag was set is reported normally
                result = await task
        except PoseSolveError as e:
            logging.warning(f'Solve failed: {e}')
            record = self.runs.add(RunRecord(request.to_dict(), {'error': e.to_dict()}, FAILED, notes))
            return {'error': e.to_dict(), 'run_id': record.id}

        if timed_out and result.status == CANCELLED:
            error = {
                'kind': 'Timeout',
                'message': f'solve did not finish within {self.solve_timeout} seconds',
                'pose': result.pose.tolist(),
                'iteration': result.iterations,
                'damping': result.damping,
                'result': result.to_dict(),
            }
            record = self.runs.add(RunRecord(request.to_dict(), {'error': error}, TIMEOUT, notes))
            return {'error': error, 'run_id': record.id}

        if result.status == MAX_ITERATIONS and self.config.server.fail_on_max_iterations:
            error = {
                'kind': 'MaxIterationsReached',
                'message': f'no convergence within {result.iterations} iterations',
                'pose': result.pose.tolist(),
                'iteration': result.iterations,
                'damping': result.damping,
            }
            record = self.runs.add(RunRecord(request.to_dict(), {'error': error}, FAILED, notes))
            return {'error': error, 'run_id': record.id}

        response = result.to_dict()
        record = self.runs.add(RunRecord(request.to_dict(), response, SUCCESS, notes))
        return {'optimize': response, 'run_id': record.id}

    async def process_message(self, message):
        try:
            update = json.loads(message)
        except json.JSONDecodeError as e:
            return {'error': InvalidInput(f'message is not valid JSON: {e}').to_dict()}
        if not isinstance(update, dict):
            return {'error': InvalidInput('message must be a JSON object').to_dict()}

        if 'optimize' in update:
            return await self.optimize(update['optimize'], update.get('notes'))
        if 'runs' in update:
            return {'runs': [r.to_dict() for r in self.runs.list()]}
        if 'run' in update:
            record = self.runs.get(update['run'])
            return {'run': None if record is None else record.to_dict()}
        return {'error': InvalidInput(f'unrecognized message with keys {sorted(update)}').to_dict()}

    async def handler(self, websocket):
        logging.info('Websocket connected')
        try:
            async for message in websocket:
                response = await self.process_message(message)
                await websocket.send(json.dumps(response))
        except (ConnectionClosedOK, ConnectionClosedError):
            logging.info('Client disconnected')

    async def main(self, host=None, port=None):
        host = host if host is not None else self.config.server.host
        port = port if port is not None else self.config.server.port
        logging.info('Starting pose solver server')
        self.run_server = True
        self.stopped = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(getattr(signal, 'SIGINT'), self.shutdown)

        async with websockets.serve(self.handler, host, port):
            logging.info(f'Websocket server started on {host}:{port}')
            await self.stopped.wait()
            logging.info('Closing websocket server')

    def shutdown(self):
        # this might get called twice
        if self.run_server:
            logging.info('Stopping pose solver server')
            self.run_server = False
            if self.stopped is not None:
                self.stopped.set()
