"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for network training.

This module exposes the engine operations a designer front end needs:
- Creating backpropagation networks and self-organizing maps
- Adding and connecting layers, attaching training data
- Setting hyperparameters and training in the background, with one
  WebSocket event per finished epoch
- Storing networks in the SQLite model registry

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for background training tasks
"""

import os
import sys
import uuid
import logging
from typing import Any, Dict, List, Optional, Tuple

import gevent
import numpy as np
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO

from annet.bpnet import BPNet
from annet.errors import (
    ANNetError,
    ConfigurationError,
    CorruptStorageError,
    DeviceError,
    DimensionMismatchError,
    MissingTrainingDataError,
    NumericInstabilityError,
    PersistenceError,
)
from annet.network import AbstractNet
from annet.somnet import SOMNet
from annet.topology import Layer
from annet.training_set import TrainingSet
from annet.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Configure root logging from LOG_LEVEL and FLASK_ENV.

    Production silences the socket and werkzeug chatter and keeps the
    engine at INFO; development leaves socket logging at INFO.
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('annet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO pushes per-epoch training progress to connected clients
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# Directory of the model registry; None uses ANNET_MODEL_DIR
MODEL_DIR: Optional[str] = None

# ============================================================================
# GLOBAL STATE
# ============================================================================

# network_id -> {network, trained, final_error}
active_networks: Dict[str, Dict[str, Any]] = {}

# job_id -> {network_id, status, progress, ...}
training_jobs: Dict[str, Dict[str, Any]] = {}

# HTTP status per engine error; subclasses are matched through the MRO
ERROR_STATUS = {
    MissingTrainingDataError: 409,
    ConfigurationError: 400,
    DimensionMismatchError: 400,
    DeviceError: 400,
    NumericInstabilityError: 422,
    CorruptStorageError: 422,
    PersistenceError: 500,
}


def error_response(error: ANNetError) -> Tuple[Any, int]:
    """Turn an engine error into a JSON response carrying its kind."""
    status = next(
        (ERROR_STATUS[cls] for cls in type(error).__mro__ if cls in ERROR_STATUS),
        500
    )
    return jsonify(error.to_dict()), status


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the registry into memory.

    Run once at startup so networks stored before a restart are
    available again without an explicit load.
    """
    saved_networks = list_saved_networks(MODEL_DIR)

    if not saved_networks:
        logger.info("Registry is empty, nothing to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id, MODEL_DIR)
        if net is None:
            logger.warning(f"Skipping unreadable stored network {network_id}")
            continue
        active_networks[network_id] = {
            'network': net,
            'trained': net_info['trained'],
            'final_error': net_info['final_error']
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from registry")


def describe_network(network_id: str, net: AbstractNet) -> Dict[str, Any]:
    """Summary of a network for JSON responses."""
    info = active_networks.get(network_id, {})
    description = {
        'network_id': network_id,
        'net_type': net.net_type,
        'layers': [
            {'kind': layer.kind.value, 'size': layer.size,
             'connected': layer.connection is not None}
            for layer in net.layers
        ],
        'parameters': {
            'learning_rate': net.learning_rate,
            'momentum': net.momentum,
            'weight_decay': net.weight_decay,
            'transfer_function': net.transfer_function.value,
            'num_devices': net.num_devices,
        },
        'trained': info.get('trained', False),
        'final_error': info.get('final_error'),
    }
    if isinstance(net, SOMNet):
        description['parameters']['neighborhood_function'] = net.neighborhood_function.value
        description['parameters']['conscience_rate'] = net.conscience_rate
    return description


def get_active_network(network_id: str) -> Optional[AbstractNet]:
    info = active_networks.get(network_id)
    return info['network'] if info else None


def network_not_found(network_id: str) -> Tuple[Any, int]:
    logger.warning(f"Request for non-existent network: {network_id}")
    return jsonify({'error': 'Network not found'}), 404

# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and the number of running training jobs."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network.

    Request body (all optional):
        {'net_type': 'bp', 'layer_sizes': [3, 32, 6]}
        {'net_type': 'som', 'input_size': 3, 'width': 10, 'height': 10}

    Without layer sizes a BP network is created empty, ready for
    layers to be added one by one.
    """
    data = request.get_json(silent=True) or {}
    net_type = data.get('net_type', BPNet.net_type)
    seed = data.get('seed')

    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int) or seed < 0):
        return jsonify({'error': 'seed must be a non-negative integer'}), 400

    try:
        if net_type == SOMNet.net_type:
            net = SOMNet.create_som(
                data.get('input_size', 2),
                data.get('width', 10),
                data.get('height', 10),
                seed=seed
            )
        elif net_type == BPNet.net_type:
            layer_sizes = data.get('layer_sizes')
            if layer_sizes is None:
                net = BPNet(seed=seed)
            elif not isinstance(layer_sizes, list):
                return jsonify({'error': 'layer_sizes must be a list'}), 400
            else:
                net = BPNet.create_net(layer_sizes, seed=seed)
        else:
            return jsonify({'error': f"Unknown net_type '{net_type}'"}), 400
    except ANNetError as e:
        logger.warning(f"Rejected network definition: {e}")
        return error_response(e)

    network_id = str(uuid.uuid4())
    active_networks[network_id] = {
        'network': net,
        'trained': False,
        'final_error': None
    }
    logger.info(f"Created {net_type} network {network_id} with layers {net.layer_sizes}")

    return jsonify(describe_network(network_id, net)), 201


@app.route('/api/networks/<network_id>', methods=['GET'])
def get_network(network_id: str):
    net = get_active_network(network_id)
    if net is None:
        return network_not_found(network_id)
    return jsonify(describe_network(network_id, net)), 200


@app.route('/api/networks/<network_id>/layers', methods=['POST'])
def add_layer(network_id: str):
    """
    Append a layer.

    Request body:
        {'size': 32, 'kind': 'hidden'}
    """
    net = get_active_network(network_id)
    if net is None:
        return network_not_found(network_id)

    data = request.get_json(silent=True) or {}
    try:
        net.add_layer(Layer(data.get('size'), data.get('kind', 'hidden')))
    except ANNetError as e:
        logger.warning(f"Rejected layer for network {network_id}: {e}")
        return error_response(e)

    return jsonify(describe_network(network_id, net)), 201


@app.route('/api/networks/<network_id>/connect', methods=['POST'])
def connect_layers(network_id: str):
    """
    Connect two consecutive layers, or every unconnected pair.

    Request body (optional):
        {'prev': 0, 'next': 1}
    """
    net = get_active_network(network_id)
    if net is None:
        return network_not_found(network_id)

    data = request.get_json(silent=True) or {}
    try:
        if 'prev' in data or 'next' in data:
            layers = net.layers
            prev_index, next_index = data.get('prev'), data.get('next')
            if not all(isinstance(i, int) and 0 <= i < len(layers)
                       for i in (prev_index, next_index)):
                return jsonify({'error': 'prev and next must be valid layer indices'}), 400
            net.connect_layers(layers[prev_index], layers[next_index])
        else:
            net.connect_all()
    except ANNetError as e:
        logger.warning(f"Rejected connection for network {network_id}: {e}")
        return error_response(e)

    return jsonify(describe_network(network_id, net)), 200


@app.route('/api/networks/<network_id>/training_set', methods=['PUT'])
def set_training_set(network_id: str):
    """
    Attach a training set.

    Request body:
        {'inputs': [[...], ...], 'outputs': [[...], ...]}  # outputs optional for SOM
    """
    net = get_active_network(network_id)
    if net is None:
        return network_not_found(network_id)

    data = request.get_json(silent=True) or {}
    inputs = data.get('inputs')
    outputs = data.get('outputs')
    if not isinstance(inputs, list) or not inputs:
        return jsonify({'error': 'inputs must be a non-empty list of vectors'}), 400
    if outputs is not None and (not isinstance(outputs, list) or len(outputs) != len(inputs)):
        return jsonify({'error': 'outputs must be a list matching inputs'}), 400

    try:
        training_set = TrainingSet()
        for index, vector in enumerate(inputs):
            training_set.add_input(vector)
            if outputs is not None:
                training_set.add_output(outputs[index])
    except ANNetError as e:
        return error_response(e)
    except (TypeError, ValueError) as e:
        return jsonify({'error': f'Invalid training vectors: {e}'}), 400

    net.set_training_set(training_set)
    logger.info(f"Attached {len(training_set)} training pair(s) to network {network_id}")
    return jsonify({'network_id': network_id, 'pairs': len(training_set)}), 200


@app.route('/api/networks/<network_id>/parameters', methods=['PUT'])
def set_parameters(network_id: str):
    """
    Set hyperparameters. Every field is optional.

    Request body:
        {
            'learning_rate': 0.075,
            'momentum': 0.0,
            'weight_decay': 0.0,
            'transfer_function': 'sigmoid',
            'neighborhood_function': 'gaussian',  # SOM only
            'conscience_rate': 0.1,               # SOM only
            'num_devices': 2
        }
    """
    net = get_active_network(network_id)
    if net is None:
        return network_not_found(network_id)

    data = request.get_json(silent=True) or {}
    setters = {
        'learning_rate': net.set_learning_rate,
        'momentum': net.set_momentum,
        'weight_decay': net.set_weight_decay,
        'transfer_function': net.set_transfer_function,
        'num_devices': net.set_num_devices,
    }
    if isinstance(net, SOMNet):
        setters['neighborhood_function'] = net.set_neighborhood_function
        setters['conscience_rate'] = net.set_conscience_rate

    unknown = sorted(set(data) - set(setters))
    if unknown:
        return jsonify({'error': f'Unknown parameters: {unknown}'}), 400

    try:
        for name, value in data.items():
            setters[name](value)
    except ANNetError as e:
        logger.warning(f"Rejected parameters for network {network_id}: {e}")
        return error_response(e)
    except (TypeError, ValueError) as e:
        return jsonify({'error': f'Invalid parameter value: {e}'}), 400

    return jsonify(describe_network(network_id, net)), 200


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Queue a training run for a network.

    Request body (all optional):
        {'max_cycles': 1000, 'target_error': 0.001}

    Returns:
        202 with the job id to poll or follow over the socket
    """
    if network_id not in active_networks:
        return network_not_found(network_id)

    data = request.get_json(silent=True) or {}
    max_cycles = data.get('max_cycles', 1000)
    target_error = data.get('target_error', 0.001)

    if not isinstance(max_cycles, int) or max_cycles < 1:
        return jsonify({'error': 'max_cycles must be a positive integer'}), 400
    if not isinstance(target_error, (int, float)) or target_error < 0:
        return jsonify({'error': 'target_error must be a non-negative number'}), 400

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'max_cycles': max_cycles
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"max_cycles={max_cycles}, target_error={target_error}"
    )

    # Training runs in a greenlet; the job id is returned right away
    socketio.start_background_task(
        train_network_task, network_id, job_id, max_cycles, target_error
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    max_cycles: int,
    target_error: float
) -> None:
    """
    Background task that trains a network.

    Sends one 'training_update' event per epoch, then either
    'training_complete' or 'training_error'.
    """
    net = active_networks[network_id]['network']

    def on_epoch_complete(epoch: int, error: float) -> None:
        progress = ((epoch + 1) / max_cycles) * 100

        training_jobs[job_id]['status'] = 'training'
        training_jobs[job_id]['progress'] = progress

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': epoch,
            'max_cycles': max_cycles,
            'error': error,
            'progress': progress
        })

        # Yield so the event is flushed before the next epoch
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")
        errors = net.train_from_data(max_cycles, target_error, callback=on_epoch_complete)
        final_error = errors[-1]

        active_networks[network_id]['trained'] = True
        active_networks[network_id]['final_error'] = final_error

        training_jobs[job_id].update({
            'status': 'completed',
            'progress': 100,
            'epochs': len(errors),
            'final_error': final_error
        })

        logger.info(
            f"Training completed for job {job_id}: {len(errors)} epoch(s), "
            f"final error {final_error:.6f}"
        )

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'epochs': len(errors),
            'final_error': final_error,
            'progress': 100
        })
        gevent.sleep(0)

    except ANNetError as e:
        logger.error(f"Training failed for job {job_id}: {e}")
        training_jobs[job_id].update({
            'status': 'failed',
            'error': e.message,
            'kind': e.kind
        })
        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': e.message,
            'kind': e.kind
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")
        training_jobs[job_id].update({'status': 'failed', 'error': str(e)})
        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id not in training_jobs:
        logger.warning(f"Status requested for non-existent job: {job_id}")
        return jsonify({'error': 'Training job not found'}), 404
    return jsonify(training_jobs[job_id]), 200


@app.route('/api/networks/<network_id>/errors', methods=['GET'])
def get_errors(network_id: str):
    """Per-epoch error sequence of the most recent training run."""
    net = get_active_network(network_id)
    if net is None:
        return network_not_found(network_id)
    return jsonify({'network_id': network_id, 'errors': list(net.errors)}), 200


@app.route('/api/networks/<network_id>/propagate', methods=['POST'])
def propagate(network_id: str):
    """
    Run one input through the network.

    Request body:
        {'input': [0.1, 0.2, 0.3]}
    """
    net = get_active_network(network_id)
    if net is None:
        return network_not_found(network_id)

    data = request.get_json(silent=True) or {}
    vector = data.get('input')
    if not isinstance(vector, list):
        return jsonify({'error': 'input must be a list of numbers'}), 400

    try:
        output = net.propagate_forward(vector)
        response = {'network_id': network_id, 'output': array_to_float_list(output)}
        if isinstance(net, SOMNet):
            bmu = net.find_bmu(vector)
            response['bmu'] = {
                'id': bmu.bmu_id,
                'position': array_to_float_list(bmu.position)
            }
    except ANNetError as e:
        return error_response(e)
    except (TypeError, ValueError) as e:
        return jsonify({'error': f'Invalid input vector: {e}'}), 400

    return jsonify(response), 200


@app.route('/api/networks/<network_id>/save', methods=['POST'])
def save_network_endpoint(network_id: str):
    """Store a network in the model registry."""
    info = active_networks.get(network_id)
    if info is None:
        return network_not_found(network_id)

    saved = save_network(
        info['network'],
        network_id,
        model_dir=MODEL_DIR,
        trained=info['trained'],
        final_error=info['final_error']
    )
    if not saved:
        return jsonify({'error': 'Failed to save network'}), 500
    return jsonify({'network_id': network_id, 'status': 'saved'}), 200


@app.route('/api/networks/<network_id>/load', methods=['POST'])
def load_network_endpoint(network_id: str):
    """Load a stored network into memory, replacing any in-memory copy."""
    net = load_network(network_id, MODEL_DIR)
    if net is None:
        return network_not_found(network_id)

    metadata = next(
        (n for n in list_saved_networks(MODEL_DIR) if n['network_id'] == network_id),
        {}
    )
    active_networks[network_id] = {
        'network': net,
        'trained': metadata.get('trained', False),
        'final_error': metadata.get('final_error')
    }
    return jsonify(describe_network(network_id, net)), 200


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved)."""
    in_memory = []
    for nid, info in active_networks.items():
        entry = describe_network(nid, info['network'])
        entry['status'] = 'in_memory'
        in_memory.append(entry)

    in_memory_ids = set(active_networks.keys())
    saved_only = []
    for net in list_saved_networks(MODEL_DIR):
        if net['network_id'] not in in_memory_ids:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")
    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and the registry."""
    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = delete_network(network_id, MODEL_DIR)

    if not deleted_from_memory and not deleted_from_disk:
        return network_not_found(network_id)

    logger.info(
        f"Deleted network {network_id}: memory={deleted_from_memory}, "
        f"disk={deleted_from_disk}"
    )
    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Flatten an array into plain floats for jsonify."""
    return [float(val) for val in np.asarray(array).flatten()]

# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    reload_saved_networks()

    port = int(os.environ.get('PORT', 8000))
    logger.info(f"Starting server at http://localhost:{port}/")

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
