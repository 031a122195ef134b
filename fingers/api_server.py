"""
api_server.py
~~~~~~~~~~~~~

Training service: HTTP endpoints for building, training and inspecting
networks, with training progress pushed over Socket.IO.

Endpoints cover:
- Creating networks from a definition
- Starting background training jobs and stopping them at the next
  epoch boundary
- Full and partial (up to a hidden layer) evaluation
- Rendering first-layer features as PNG images
- Listing, deleting and expiring networks in the SQLite registry

Training jobs run as gevent background tasks; each job trains a copy of
the network and swaps it in once the trainer returns.
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

from fingers.config import configure_logging
from fingers.data import random_batch_supplier, split_data_sequences
from fingers.exceptions import (
    ConfigurationError,
    DatasetError,
    PersistenceError,
    ShapeMismatchError,
)
from fingers.mnist_loader import load_npz
from fingers.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks,
)
from fingers.network import Network, NetworkDefinition
from fingers.training import (
    EpochReport,
    LearningFlag,
    TrainConfig,
    Trainer,
    TrainingState,
)
from fingers.visualization import feature_image, render_png_base64

configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/api/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

# Progress events for training jobs
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

MODEL_DIR = os.getenv('FINGERS_MODEL_DIR', 'models')
DATASET_PATH = os.getenv('FINGERS_DATASET')

# ============================================================================
# GLOBAL STATE
# ============================================================================

# {network_id: {network, architecture, activation_fn, trained, validation_cost}}
active_networks: Dict[str, Dict[str, Any]] = {}

# {job_id: {network_id, status, epoch, train_cost, validation_cost}}
training_jobs: Dict[str, Dict[str, Any]] = {}

# Cancellation flags of running jobs: {job_id: LearningFlag}
learning_flags: Dict[str, LearningFlag] = {}

# Server-side autoencoder dataset, loaded on first use
server_dataset: Optional[List[np.ndarray]] = None

ACTIVE_STATUSES = ('pending', 'training')
TRAIN_OPTIONS = ('examples', 'inputs', 'seed', 'workers')


# ============================================================================
# DATA LOADING
# ============================================================================

def get_server_dataset() -> List[np.ndarray]:
    """
    Load the dataset named by ``FINGERS_DATASET`` once and cache it.

    Raises:
        DatasetError: If no dataset is configured or it cannot be loaded
    """
    global server_dataset

    if server_dataset is None:
        if not DATASET_PATH:
            raise DatasetError("no server dataset configured (FINGERS_DATASET)")
        logger.info(f"Loading server dataset from {DATASET_PATH}...")
        server_dataset, _ = load_npz(DATASET_PATH)
    return server_dataset


def reload_saved_networks() -> None:
    """Load every network saved in the registry into memory."""
    saved_networks = list_saved_networks(MODEL_DIR)

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        try:
            net = load_network(network_id, MODEL_DIR)
        except PersistenceError as e:
            logger.error(f"Error loading network {network_id}: {e}")
            continue
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue
        active_networks[network_id] = {
            'network': net,
            'architecture': net_info['architecture'],
            'activation_fn': net_info['activation_fn'],
            'trained': net_info['trained'],
            'validation_cost': net_info['validation_cost']
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

_cleanup_task_started = False


def cleanup_old_networks_task(days: int = 2) -> None:
    """Delete networks older than ``days`` from the registry every 24 hours."""
    while True:
        try:
            deleted_count = delete_old_networks(days=days, model_dir=MODEL_DIR)
            if deleted_count > 0:
                saved_ids = {
                    net['network_id'] for net in list_saved_networks(MODEL_DIR)
                }
                for nid in [n for n in active_networks if n not in saved_ids]:
                    del active_networks[nid]
                    logger.info(f"Removed network {nid} from memory")
            cleanup_finished_training_jobs()
            gevent.sleep(86400)
        except PersistenceError as e:
            logger.error(f"Error during network cleanup: {e}")
            gevent.sleep(3600)


def cleanup_finished_training_jobs() -> None:
    """Remove completed, stopped or failed training jobs from memory."""
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') not in ACTIVE_STATUSES
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]
        learning_flags.pop(job_id, None)

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task() -> None:
    """Start the background cleanup task once."""
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_networks_task)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in np.asarray(array).flatten()]


def network_summary(network_id: str, info: Dict[str, Any], status: str) -> Dict[str, Any]:
    return {
        'network_id': network_id,
        'architecture': info['architecture'],
        'activation_fn': info['activation_fn'],
        'trained': info['trained'],
        'validation_cost': info['validation_cost'],
        'status': status
    }


def parse_training_data(
    data: Dict[str, Any],
    network: Network
) -> Tuple[list, bool]:
    """
    Extract training examples from a train request.

    Returns:
        (examples, autoencoder): (input, target) pairs, or feature vectors
        when ``autoencoder`` is True

    Raises:
        ConfigurationError: If no usable data is given
        ShapeMismatchError: If a vector has the wrong width
    """
    in_width = network.layer_sizes[0]
    out_width = network.layer_sizes[-1]

    if 'examples' in data:
        examples = data['examples']
        if not isinstance(examples, list) or not examples:
            raise ConfigurationError("examples must be a non-empty list")
        for example in examples:
            if (not isinstance(example, list) or len(example) != 2
                    or not all(isinstance(v, list) for v in example)):
                raise ConfigurationError("each example must be [input, target]")
            if len(example[0]) != in_width:
                raise ShapeMismatchError((in_width,), (len(example[0]),))
            if len(example[1]) != out_width:
                raise ShapeMismatchError((out_width,), (len(example[1]),), 'target')
        return [(example[0], example[1]) for example in examples], False

    if in_width != out_width:
        raise ConfigurationError(
            "autoencoder training needs equal input and output widths"
        )
    if 'inputs' in data:
        inputs = data['inputs']
        if not isinstance(inputs, list) or not inputs:
            raise ConfigurationError("inputs must be a non-empty list")
    else:
        inputs = get_server_dataset()
    for vector in inputs:
        if not isinstance(vector, (list, np.ndarray)):
            raise ConfigurationError("each input must be a list of numbers")
        if len(vector) != in_width:
            raise ShapeMismatchError((in_width,), (len(vector),))
    return list(inputs), True


def start_training_task(*args: Any) -> None:
    """Run training in the background so the request can return immediately."""
    socketio.start_background_task(train_network_task, *args)


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status and the number of running training jobs."""
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in ACTIVE_STATUSES
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network with random weights.

    Request body:
        {
            'layers': [196, 64, 196],
            'activation_coeffs': [1.0, 1.0],
            'activation_fn': 'sigmoid',
            'seed': 42            # optional
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}

    try:
        defn = NetworkDefinition.from_dict(data)
        net = Network.from_definition(defn)
    except ConfigurationError as e:
        logger.warning(f"Invalid network definition requested: {e}")
        return jsonify({'error': str(e)}), 400

    net.assign_random_weights(np.random.default_rng(data.get('seed')))
    network_id = str(uuid.uuid4())

    active_networks[network_id] = {
        'network': net,
        'architecture': net.layer_sizes,
        'activation_fn': net.activation_fn.value,
        'trained': False,
        'validation_cost': None
    }

    logger.info(f"Created network {network_id} with architecture {net.layer_sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.layer_sizes,
        'activation_fn': net.activation_fn.value,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body: train config fields plus either
        'examples': [[input, target], ...]
    or
        'inputs': [vector, ...] (autoencoder; the server dataset is used
        when omitted)
    and optionally 'seed' and 'workers'.

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    net = active_networks[network_id]['network']

    try:
        conf = TrainConfig.from_dict(
            {k: v for k, v in data.items() if k not in TRAIN_OPTIONS}
        )
        examples, autoencoder = parse_training_data(data, net)
    except (ConfigurationError, ShapeMismatchError, DatasetError) as e:
        return jsonify({'error': str(e)}), 400

    workers = data.get('workers')
    if workers is not None and (not isinstance(workers, int) or workers < 1):
        return jsonify({'error': 'workers must be a positive integer'}), 400

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'epoch': 0,
        'train_cost': None,
        'validation_cost': None
    }
    learning_flags[job_id] = LearningFlag()

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"{len(examples)} examples, autoencoder={autoencoder}"
    )

    start_training_task(
        network_id, job_id, conf, examples, autoencoder,
        data.get('seed'), workers
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    conf: TrainConfig,
    examples: list,
    autoencoder: bool,
    seed: Optional[int] = None,
    workers: Optional[int] = None
) -> None:
    """
    Background task that trains a copy of a network and swaps it in.

    Sends progress updates via WebSocket at every progress report.
    """
    net = active_networks[network_id]['network'].copy()
    rng = np.random.default_rng(seed)

    def on_report(report: EpochReport) -> None:
        """Called at every progress report to send updates."""
        job = training_jobs[job_id]
        job['status'] = 'training'
        job['epoch'] = report.epoch
        job['train_cost'] = report.train_cost
        job['validation_cost'] = report.best_validation_cost

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            **report.to_dict()
        })

        # Let gevent send the message immediately
        gevent.sleep(0)

    def yield_to_other_tasks() -> None:
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")
        train_data, validation_data = split_data_sequences(
            rng, examples, conf.validation_ratio
        )
        supplier = random_batch_supplier(rng, train_data, conf.batch_fraction)
        trainer = Trainer(
            net,
            conf,
            learning=learning_flags[job_id],
            workers=workers,
            callback=on_report,
            yield_func=yield_to_other_tasks
        )
        if autoencoder:
            result = trainer.train_autoencoder(supplier, validation_data or None)
        else:
            result = trainer.train(supplier, validation_data or None)

        info = active_networks[network_id]
        info['network'] = net
        info['trained'] = True
        info['validation_cost'] = result.best_validation_cost

        save_network(
            net,
            network_id,
            model_dir=MODEL_DIR,
            trained=True,
            validation_cost=result.best_validation_cost
        )

        status = 'stopped' if result.state is TrainingState.STOPPED else 'completed'
        training_jobs[job_id].update({
            'status': status,
            'state': result.state.value,
            'epoch': result.epochs,
            'train_cost': result.train_cost,
            'validation_cost': result.best_validation_cost
        })

        logger.info(
            f"Training finished for job {job_id}: {result.state.value} "
            f"after {result.epochs} epoch(s)"
        )

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': status,
            'state': result.state.value,
            'epochs': result.epochs,
            'train_cost': result.train_cost,
            'validation_cost': result.best_validation_cost
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)

    finally:
        learning_flags.pop(job_id, None)


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id not in training_jobs:
        logger.warning(f"Status requested for non-existent job: {job_id}")
        return jsonify({'error': 'Training job not found'}), 404
    return jsonify(training_jobs[job_id]), 200


@app.route('/api/training/<job_id>/stop', methods=['POST'])
def stop_training(job_id: str):
    """
    Ask a training job to stop at the next epoch boundary.

    The best validated parameters are kept, as for any other stop.
    """
    flag = learning_flags.get(job_id)
    if flag is None:
        return jsonify({'error': 'No running training job with that id'}), 404

    flag.stop()
    logger.info(f"Stop requested for training job {job_id}")
    return jsonify({'job_id': job_id, 'status': 'stopping'}), 202


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        network_summary(nid, info, 'in_memory')
        for nid, info in active_networks.items()
    ]

    try:
        saved = list_saved_networks(MODEL_DIR)
    except PersistenceError as e:
        logger.error(f"Error listing saved networks: {e}")
        saved = []

    saved_only = []
    for net in saved:
        if net['network_id'] not in active_networks:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    deleted_from_memory = active_networks.pop(network_id, None) is not None

    try:
        deleted_from_disk = delete_network(network_id, MODEL_DIR)
    except PersistenceError as e:
        logger.error(f"Error deleting network {network_id}: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Manually trigger cleanup of networks older than specified days.

    Request body (optional):
        {'days': 2}  # defaults to 2
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', 2)

    if not isinstance(days, (int, float)) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    try:
        deleted_count = delete_old_networks(days=days, model_dir=MODEL_DIR)
    except PersistenceError as e:
        logger.error(f"Error during manual cleanup: {e}")
        return jsonify({'error': 'Internal server error'}), 500

    return jsonify({
        'deleted_count': deleted_count,
        'days': days,
        'message': f'Successfully deleted {deleted_count} network(s) older than {days} day(s)'
    }), 200


# ============================================================================
# EVALUATION ENDPOINTS
# ============================================================================

@app.route('/api/networks/<network_id>/eval', methods=['POST'])
def eval_network(network_id: str):
    """
    Run a full forward pass.

    Request body:
        {'input': [0.0, 1.0, 1.0]}
    """
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    net = active_networks[network_id]['network']

    try:
        output = net.eval(data.get('input', []))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'network_id': network_id,
        'output': array_to_float_list(output)
    }), 200


@app.route('/api/networks/<network_id>/eval_to_layer', methods=['POST'])
def eval_network_to_layer(network_id: str):
    """
    Return the activations of one layer for an input.

    Request body:
        {'input': [...], 'layer': 1}
    """
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    net = active_networks[network_id]['network']
    layer = data.get('layer')

    if not isinstance(layer, int) or isinstance(layer, bool):
        return jsonify({'error': 'layer must be an integer'}), 400

    try:
        activations = net.eval_to_layer(data.get('input', []), layer)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'network_id': network_id,
        'layer': layer,
        'activations': array_to_float_list(activations)
    }), 200


@app.route('/api/networks/<network_id>/features/<int:index>', methods=['GET'])
def get_feature_image(network_id: str, index: int):
    """
    Render the incoming weights of a first-layer hidden unit.

    Query parameters: gamma (default 1.0), rows and cols (default: a
    square matching the input width).
    """
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    net = active_networks[network_id]['network']
    width = net.layer_sizes[0]
    side = int(round(width ** 0.5))

    try:
        gamma = float(request.args.get('gamma', 1.0))
        rows = int(request.args.get('rows', side))
        cols = int(request.args.get('cols', side))
        image = feature_image(net, index, gamma, (rows, cols))
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'network_id': network_id,
        'index': index,
        'image_data': render_png_base64(image, f"Feature {index}")
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8000))
    logger.info(f"Starting server at http://localhost:{port}/")

    reload_saved_networks()
    start_cleanup_task()

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production,
            use_reloader=False
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
