"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

SQLite-backed registry of stored networks.

Every entry keeps the archive written by ``export_to_storage`` together
with metadata that can be queried without decoding it, so the training
service can list and restore networks after a restart.
"""

import io
import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

from .errors import ANNetError
from .network import AbstractNet
from .persistence import import_network

logger = logging.getLogger(__name__)

DEFAULT_MODEL_DIR = os.getenv('ANNET_MODEL_DIR', 'models')

_METADATA_COLUMNS = (
    'network_id, net_type, architecture, trained, final_error, epochs, '
    'created_at, updated_at'
)


class ModelDatabase:
    """
    One registry file.

    Rows hold:
    - the net type, layer sizes, trained flag, last epoch error and epoch
      count of the most recent training run
    - the exported archive as a BLOB
    """

    def __init__(self, db_path: str = 'models/networks.db'):
        """
        Open (and if needed create) a registry.

        Args:
            db_path: Location of the SQLite file; missing directories are created
        """
        self.db_path = db_path
        parent = os.path.dirname(db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._create_tables()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield a connection that commits on success and rolls back on error."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _create_tables(self) -> None:
        with self._get_connection() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    net_type TEXT NOT NULL,
                    architecture TEXT NOT NULL,
                    network_data BLOB NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    final_error REAL,
                    epochs INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')
            conn.execute('''
                CREATE INDEX IF NOT EXISTS idx_networks_created
                ON networks(created_at DESC)
            ''')

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> Dict[str, Any]:
        layer_sizes = json.loads(row['architecture'])
        return {
            'network_id': row['network_id'],
            'net_type': row['net_type'],
            'architecture': layer_sizes,
            # Weight matrix shape per layer boundary, [source, target]
            'edges_shape': [list(pair) for pair in zip(layer_sizes, layer_sizes[1:])],
            'trained': bool(row['trained']),
            'final_error': row['final_error'],
            'epochs': row['epochs'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def save_network_to_db(
        self,
        network: AbstractNet,
        network_id: str,
        trained: bool = True,
        final_error: Optional[float] = None
    ) -> bool:
        """
        Insert or replace a registry entry.

        Args:
            network: Fully connected network to store
            network_id: Registry key
            trained: Whether the network has been trained
            final_error: Error of the last finished epoch, if trained

        Returns:
            bool: True once the row is committed

        Raises:
            ValueError: If final_error is negative
            ConfigurationError: If the network cannot be exported
        """
        if final_error is not None and final_error < 0.0:
            raise ValueError(f"final_error must be non-negative, got {final_error}")

        archive = io.BytesIO()
        network.export_to_storage(archive)

        with self._get_connection() as conn:
            conn.execute('''
                INSERT OR REPLACE INTO networks
                (network_id, net_type, architecture, network_data, trained,
                 final_error, epochs, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ''', (
                network_id,
                network.net_type,
                json.dumps(network.layer_sizes),
                archive.getvalue(),
                int(bool(trained)),
                final_error,
                len(network.errors)
            ))

        logger.info(
            f"Stored {network.net_type} network '{network_id}' "
            f"{network.layer_sizes} (trained={trained}, final_error={final_error})"
        )
        return True

    def load_network_from_db(self, network_id: str) -> Optional[AbstractNet]:
        """
        Rebuild a stored network.

        Returns:
            The network, or None if no entry has this id

        Raises:
            CorruptStorageError: If the stored archive cannot be decoded
        """
        with self._get_connection() as conn:
            row = conn.execute(
                'SELECT network_data FROM networks WHERE network_id = ?',
                (network_id,)
            ).fetchone()

        if row is None:
            logger.warning(f"No stored network '{network_id}'")
            return None

        network = import_network(io.BytesIO(row['network_data']))
        logger.info(f"Restored network '{network_id}' {network.layer_sizes}")
        return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """Metadata of every entry, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                f'SELECT {_METADATA_COLUMNS} FROM networks ORDER BY created_at DESC'
            ).fetchall()
        return [self._row_to_metadata(row) for row in rows]

    def delete_network_from_db(self, network_id: str) -> bool:
        """
        Remove an entry.

        Returns:
            bool: False if there was nothing to remove
        """
        with self._get_connection() as conn:
            removed = conn.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            ).rowcount > 0

        if removed:
            logger.info(f"Removed stored network '{network_id}'")
        else:
            logger.warning(f"Cannot remove '{network_id}': no such entry")
        return removed

    def get_network_metadata_from_db(self, network_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                f'SELECT {_METADATA_COLUMNS} FROM networks WHERE network_id = ?',
                (network_id,)
            ).fetchone()
        return self._row_to_metadata(row) if row is not None else None


# One registry per model directory
_databases: Dict[str, ModelDatabase] = {}


def _get_db(model_dir: Optional[str] = None) -> ModelDatabase:
    """Registry stored in ``<model_dir>/networks.db`` (``ANNET_MODEL_DIR`` by default)."""
    model_dir = model_dir or DEFAULT_MODEL_DIR
    if model_dir not in _databases:
        _databases[model_dir] = ModelDatabase(os.path.join(model_dir, 'networks.db'))
    return _databases[model_dir]


def _valid_id(network_id: str) -> bool:
    if not isinstance(network_id, str) or not network_id:
        logger.error(f"Rejected network id {network_id!r}: expected a non-empty string")
        return False
    return True


def save_network(
    network: AbstractNet,
    network_id: str,
    model_dir: Optional[str] = None,
    trained: bool = True,
    final_error: Optional[float] = None
) -> bool:
    """
    Store a network in the registry.

    Args:
        network: The network to store
        network_id: Registry key; an existing entry is replaced
        model_dir: Directory of the registry file
        trained: Whether the network has been trained
        final_error: Error of the last finished epoch

    Returns:
        bool: False if the network could not be stored

    Example:
        >>> net = BPNet.create_net([3, 4, 2])
        >>> save_network(net, "xor", trained=False)
        True
    """
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).save_network_to_db(network, network_id, trained, final_error)
    except ANNetError as e:
        logger.error(f"Cannot export network '{network_id}': {e}")
        return False
    except ValueError as e:
        logger.error(f"Invalid metadata for network '{network_id}': {e}")
        return False
    except sqlite3.Error as e:
        logger.error(f"Registry error while storing '{network_id}': {e}")
        return False
    except Exception as e:
        logger.exception(f"Unexpected error while storing '{network_id}': {e}")
        return False


def load_network(network_id: str,
                 model_dir: Optional[str] = None) -> Optional[AbstractNet]:
    """
    Restore a network from the registry.

    Returns:
        The network, or None if it is missing or its archive is unreadable
    """
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).load_network_from_db(network_id)
    except ANNetError as e:
        logger.error(f"Stored network '{network_id}' is unreadable: {e}")
        return None
    except sqlite3.Error as e:
        logger.error(f"Registry error while loading '{network_id}': {e}")
        return None
    except Exception as e:
        logger.exception(f"Unexpected error while loading '{network_id}': {e}")
        return None


def list_saved_networks(model_dir: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Metadata of every stored network, newest first.

    Example:
        >>> for entry in list_saved_networks():
        ...     print(entry['network_id'], entry['net_type'], entry['final_error'])
    """
    try:
        networks = _get_db(model_dir).list_networks_from_db()
    except (sqlite3.Error, json.JSONDecodeError) as e:
        logger.error(f"Cannot list stored networks: {e}")
        return []
    except Exception as e:
        logger.exception(f"Unexpected error while listing stored networks: {e}")
        return []
    logger.debug(f"Registry holds {len(networks)} network(s)")
    return networks


def delete_network(network_id: str, model_dir: Optional[str] = None) -> bool:
    """Remove a network from the registry; False if it was not there."""
    if not _valid_id(network_id):
        return False

    try:
        return _get_db(model_dir).delete_network_from_db(network_id)
    except sqlite3.Error as e:
        logger.error(f"Registry error while removing '{network_id}': {e}")
        return False
    except Exception as e:
        logger.exception(f"Unexpected error while removing '{network_id}': {e}")
        return False


def get_network_metadata(
    network_id: str,
    model_dir: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """
    Metadata of one stored network without decoding its archive.

    Example:
        >>> entry = get_network_metadata("xor")
        >>> if entry:
        ...     print(entry['epochs'], entry['final_error'])
    """
    if not _valid_id(network_id):
        return None

    try:
        return _get_db(model_dir).get_network_metadata_from_db(network_id)
    except (sqlite3.Error, json.JSONDecodeError) as e:
        logger.error(f"Cannot read metadata of '{network_id}': {e}")
        return None
    except Exception as e:
        logger.exception(f"Unexpected error while reading metadata of '{network_id}': {e}")
        return None
