"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

Snapshot codec and SQLite-based persistence for networks.

A snapshot is a short header (magic bytes and a format version)
followed by a pickled dictionary of plain values and numpy arrays, so
loading never depends on the current class layout. Snapshots can be
written to files or stored in a SQLite registry with metadata.
"""

import sqlite3
import pickle
import json
import math
import os
import logging
from typing import Optional, List, Dict, Any, Generator
from contextlib import contextmanager

import numpy as np

from fingers.activation import ActivationFunction
from fingers.exceptions import PersistenceError
from fingers.network import Network

# Configure module logger
logger = logging.getLogger(__name__)

MAGIC = b'FNGR'
FORMAT_VERSION = 1
HEADER_SIZE = len(MAGIC) + 1


class NetworkEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy arrays and scalars."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return super().default(obj)


# ============================================================================
# SNAPSHOT CODEC
# ============================================================================

def _network_state(network: Network) -> Dict[str, Any]:
    return {
        'layer_sizes': list(network.layer_sizes),
        'activation_coeffs': list(network.activation_coeffs),
        'activation_fn': network.activation_fn.value,
        'weights': [w.copy() for w in network.weights],
        'biases': [b.copy() for b in network.biases],
    }


def _network_from_state(state: Dict[str, Any]) -> Network:
    return Network(
        state['layer_sizes'],
        state['activation_coeffs'],
        [np.asarray(w, dtype=float) for w in state['weights']],
        [np.asarray(b, dtype=float) for b in state['biases']],
        ActivationFunction.from_name(state['activation_fn'])
    )


def dumps(network: Network) -> bytes:
    """
    Serialize a network snapshot to bytes.

    Args:
        network: Network to serialize

    Returns:
        bytes: Header followed by the pickled parameter state
    """
    payload = pickle.dumps(_network_state(network), protocol=pickle.HIGHEST_PROTOCOL)
    return MAGIC + bytes([FORMAT_VERSION]) + payload


def loads(data: bytes) -> Network:
    """
    Restore a network from bytes produced by :func:`dumps`.

    Raises:
        PersistenceError: If the data is not a snapshot, was written by
            an unsupported format version, is truncated, or holds
            inconsistent parameters
    """
    if len(data) < HEADER_SIZE or data[:len(MAGIC)] != MAGIC:
        raise PersistenceError("not a network snapshot")

    version = data[len(MAGIC)]
    if version != FORMAT_VERSION:
        raise PersistenceError(
            f"unsupported snapshot version {version} "
            f"(expected {FORMAT_VERSION})"
        )

    try:
        state = pickle.loads(data[HEADER_SIZE:])
    except (pickle.UnpicklingError, EOFError, ValueError,
            AttributeError, ImportError, IndexError) as e:
        raise PersistenceError(f"corrupt or truncated snapshot: {e}") from e

    try:
        return _network_from_state(state)
    except (KeyError, TypeError, ValueError) as e:
        raise PersistenceError(f"invalid snapshot contents: {e}") from e


def save_model(network: Network, path: str) -> None:
    """
    Write a network snapshot to a file.

    Raises:
        PersistenceError: If the file cannot be written
    """
    data = dumps(network)
    try:
        with open(path, 'wb') as f:
            f.write(data)
    except OSError as e:
        raise PersistenceError(f"cannot write model to {path}: {e}") from e
    logger.info(f"Model written to {path}")


def load_model(path: str) -> Network:
    """
    Read a network snapshot from a file.

    Raises:
        PersistenceError: If the file cannot be read or decoded
    """
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise PersistenceError(f"cannot read model from {path}: {e}") from e
    network = loads(data)
    logger.info(f"Loaded model {network.layer_sizes} from {path}")
    return network


# ============================================================================
# MODEL REGISTRY
# ============================================================================

class ModelDatabase:
    """
    Manages SQLite database for network persistence.

    The database stores:
    - Network metadata (architecture, activation, training status,
      best validation cost)
    - Network snapshots as binary blobs
    """

    def __init__(self, db_path: str = 'models/networks.db'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir)
            except OSError as e:
                raise PersistenceError(
                    f"cannot create model directory {db_dir}: {e}"
                ) from e

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Yields:
            sqlite3.Connection: Database connection

        Raises:
            PersistenceError: On any SQLite failure
        """
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    activation_fn TEXT NOT NULL,
                    network_data BLOB NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    validation_cost REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON networks(created_at DESC)
            ''')

    @staticmethod
    def _metadata(row: sqlite3.Row) -> Dict[str, Any]:
        architecture = json.loads(row['architecture'])
        return {
            'network_id': row['network_id'],
            'architecture': architecture,
            'weights_shape': [
                [architecture[i], architecture[i + 1]]
                for i in range(len(architecture) - 1)
            ],
            'biases_shape': [[size] for size in architecture[1:]],
            'activation_fn': row['activation_fn'],
            'trained': bool(row['trained']),
            'validation_cost': row['validation_cost'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def save_network_to_db(
        self,
        network: Network,
        network_id: str,
        trained: bool = True,
        validation_cost: Optional[float] = None
    ) -> bool:
        """
        Save a network to the database, replacing any previous version.

        Args:
            network: Network to save
            network_id: Unique identifier for the network
            trained: Whether the network has been trained
            validation_cost: Best validation cost reached, if any

        Returns:
            bool: True once stored

        Raises:
            ValueError: If validation_cost is negative or not finite
            PersistenceError: On database failure
        """
        if validation_cost is not None and (
            not math.isfinite(validation_cost) or validation_cost < 0
        ):
            raise ValueError(
                f"validation_cost must be a finite non-negative number, "
                f"got {validation_cost}"
            )

        network_data = dumps(network)
        architecture_json = json.dumps(network.layer_sizes, cls=NetworkEncoder)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO networks
                (network_id, architecture, activation_fn, network_data,
                 trained, validation_cost)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(network_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    activation_fn = excluded.activation_fn,
                    network_data = excluded.network_data,
                    trained = excluded.trained,
                    validation_cost = excluded.validation_cost,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                architecture_json,
                network.activation_fn.value,
                sqlite3.Binary(network_data),
                1 if trained else 0,
                validation_cost
            ))

        logger.info(
            f"Saved network '{network_id}' with architecture "
            f"{network.layer_sizes}, trained={trained}, "
            f"validation_cost={validation_cost}"
        )
        return True

    def load_network_from_db(self, network_id: str) -> Optional[Network]:
        """
        Load a network from the database.

        Returns:
            Network or None if not found

        Raises:
            PersistenceError: If the stored snapshot cannot be decoded
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT network_data FROM networks WHERE network_id = ?',
                (network_id,)
            )
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Network '{network_id}' not found")
            return None

        network = loads(bytes(row['network_data']))
        logger.info(f"Loaded network '{network_id}'")
        return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """List metadata of all stored networks, newest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, architecture, activation_fn, trained,
                       validation_cost, created_at, updated_at
                FROM networks
                ORDER BY created_at DESC
            ''')
            networks = [self._metadata(row) for row in cursor.fetchall()]

        logger.debug(f"Listed {len(networks)} networks")
        return networks

    def delete_network_from_db(self, network_id: str) -> bool:
        """
        Delete a network from the database.

        Returns:
            bool: True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            )
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted network '{network_id}'")
        else:
            logger.warning(f"Could not delete network '{network_id}': not found")
        return deleted

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """Get network metadata without decoding the snapshot."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT network_id, architecture, activation_fn, trained,
                       validation_cost, created_at, updated_at
                FROM networks
                WHERE network_id = ?
            ''', (network_id,))
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Metadata for network '{network_id}' not found")
            return None
        return self._metadata(row)

    def delete_old_networks_from_db(self, days: float) -> int:
        """
        Delete networks created more than ``days`` days ago.

        Returns:
            int: Number of networks deleted

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                DELETE FROM networks
                WHERE julianday('now') - julianday(created_at) > ?
            ''', (days,))
            deleted = cursor.rowcount

        logger.info(f"Deleted {deleted} network(s) older than {days} day(s)")
        return deleted


# Global database instance
_db = None


def _get_db(model_dir: str = 'models') -> ModelDatabase:
    """
    Get the database for a model directory.

    The default directory shares one global instance.
    """
    global _db
    if model_dir != 'models':
        return ModelDatabase(db_path=os.path.join(model_dir, 'networks.db'))
    if _db is None:
        _db = ModelDatabase()
    return _db


def _valid_id(network_id: Any) -> bool:
    if not network_id or not isinstance(network_id, str):
        logger.error("Invalid network_id: must be a non-empty string")
        return False
    return True


def save_network(
    network: Network,
    network_id: str,
    model_dir: str = 'models',
    trained: bool = True,
    validation_cost: Optional[float] = None
) -> bool:
    """
    Save a network to the registry in ``model_dir``.

    Returns:
        bool: True if saved, False if the id is invalid

    Raises:
        PersistenceError: If the database cannot be written

    Example:
        >>> net = Network.from_definition(NetworkDefinition([3, 4, 1], [1, 1]))
        >>> save_network(net, "my_network", trained=False)
        True
    """
    if not _valid_id(network_id):
        return False
    return _get_db(model_dir).save_network_to_db(
        network, network_id, trained, validation_cost
    )


def load_network(network_id: str, model_dir: str = 'models') -> Optional[Network]:
    """
    Load a network from the registry in ``model_dir``.

    Returns:
        Network or None if not found

    Raises:
        PersistenceError: If the database or snapshot is unreadable
    """
    if not _valid_id(network_id):
        return None
    return _get_db(model_dir).load_network_from_db(network_id)


def list_saved_networks(model_dir: str = 'models') -> List[Dict[str, Any]]:
    """List metadata for every network saved in ``model_dir``."""
    return _get_db(model_dir).list_networks_from_db()


def delete_network(network_id: str, model_dir: str = 'models') -> bool:
    """
    Delete a saved network.

    Returns:
        bool: True if deleted, False if absent or the id is invalid
    """
    if not _valid_id(network_id):
        return False
    return _get_db(model_dir).delete_network_from_db(network_id)


def get_network_metadata(
    network_id: str,
    model_dir: str = 'models'
) -> Optional[Dict[str, Any]]:
    """Get metadata for one saved network, or None if absent."""
    if not _valid_id(network_id):
        return None
    return _get_db(model_dir).get_network_metadata_from_db(network_id)


def delete_old_networks(days: float = 2, model_dir: str = 'models') -> int:
    """
    Delete networks older than ``days`` days.

    Raises:
        ValueError: If days is negative
    """
    return _get_db(model_dir).delete_old_networks_from_db(days)
