"""
test_model_persistence.py
~~~~~~~~~~~~~~~~~~~~~~~~~

Tests for the snapshot codec, model files and the SQLite registry.
"""

import os
import pickle
import sqlite3
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fingers.data import fixed_batch_supplier
from fingers.exceptions import PersistenceError
from fingers.model_persistence import (
    FORMAT_VERSION,
    MAGIC,
    ModelDatabase,
    delete_network,
    delete_old_networks,
    dumps,
    get_network_metadata,
    list_saved_networks,
    load_model,
    load_network,
    loads,
    save_model,
    save_network,
)
from fingers.network import Network, NetworkDefinition
from fingers.training import Trainer, TrainConfig


def age_network(db_dir, network_id, modifier):
    """Backdate ``created_at`` with an SQLite datetime modifier like '-3 days'."""
    conn = sqlite3.connect(os.path.join(db_dir, "networks.db"))
    conn.execute(
        "UPDATE networks SET created_at = datetime('now', ?) WHERE network_id = ?",
        (modifier, network_id)
    )
    conn.commit()
    conn.close()


def assert_same_parameters(net1, net2):
    assert net1.layer_sizes == net2.layer_sizes
    assert net1.activation_coeffs == net2.activation_coeffs
    assert net1.activation_fn is net2.activation_fn
    for w1, w2 in zip(net1.weights, net2.weights):
        assert np.array_equal(w1, w2)
    for b1, b2 in zip(net1.biases, net2.biases):
        assert np.array_equal(b1, b2)


@pytest.fixture
def temp_db_dir(tmp_path):
    """Create a temporary directory for database storage."""
    db_dir = tmp_path / "test_models"
    db_dir.mkdir()
    return str(db_dir)


@pytest.fixture
def simple_network():
    """A 3-4-2 sigmoid network with random parameters."""
    net = Network.from_definition(NetworkDefinition([3, 4, 2], [1.0, 0.5], 'sigmoid'))
    net.assign_random_weights(np.random.default_rng(0))
    return net


@pytest.fixture
def trained_network(simple_network):
    """The simple network after a few epochs of training."""
    rng = np.random.default_rng(1)
    batch = [(rng.normal(size=3).tolist(), [1.0, 0.0]) for _ in range(10)]
    Trainer(simple_network, TrainConfig(learning_rate=0.1)).train(
        fixed_batch_supplier([batch] * 3)
    )
    return simple_network


@pytest.mark.unit
class TestSnapshotCodec:
    """Test serializing networks to bytes."""

    def test_round_trip_preserves_parameters(self, trained_network):
        assert_same_parameters(loads(dumps(trained_network)), trained_network)

    @pytest.mark.parametrize("activation_fn", ['sigmoid', 'tanh', 'id'])
    def test_round_trip_preserves_activation(self, activation_fn):
        net = Network.from_definition(NetworkDefinition([2, 2], [1.5], activation_fn))
        net.assign_random_weights(np.random.default_rng(3))

        loaded = loads(dumps(net))

        assert_same_parameters(loaded, net)
        assert np.array_equal(loaded.eval([0.3, 0.7]), net.eval([0.3, 0.7]))

    def test_header(self, simple_network):
        data = dumps(simple_network)
        assert data[:len(MAGIC)] == MAGIC
        assert data[len(MAGIC)] == FORMAT_VERSION

    @pytest.mark.parametrize("data", [b'', b'FNG', b'XXXX\x01rest', b'not a snapshot at all'])
    def test_bad_magic(self, data):
        with pytest.raises(PersistenceError):
            loads(data)

    def test_unsupported_version(self, simple_network):
        data = bytearray(dumps(simple_network))
        data[len(MAGIC)] = FORMAT_VERSION + 1
        with pytest.raises(PersistenceError) as exc_info:
            loads(bytes(data))
        assert 'version' in str(exc_info.value)

    def test_truncated(self, simple_network):
        data = dumps(simple_network)
        with pytest.raises(PersistenceError):
            loads(data[:len(data) // 2])

    def test_inconsistent_state(self, simple_network):
        payload = pickle.dumps({'layer_sizes': [3, 4, 2]})
        with pytest.raises(PersistenceError):
            loads(MAGIC + bytes([FORMAT_VERSION]) + payload)

    def test_model_file_round_trip(self, trained_network, tmp_path):
        path = str(tmp_path / "model.bin")

        save_model(trained_network, path)

        assert_same_parameters(load_model(path), trained_network)

    def test_missing_model_file(self, tmp_path):
        with pytest.raises(PersistenceError):
            load_model(str(tmp_path / "missing.bin"))

    def test_unwritable_model_path(self, simple_network, tmp_path):
        with pytest.raises(PersistenceError):
            save_model(simple_network, str(tmp_path / "no_such_dir" / "model.bin"))


@pytest.mark.unit
class TestModelPersistence:
    """Test basic registry operations."""

    def test_save_network_creates_database(self, simple_network, temp_db_dir):
        success = save_network(simple_network, "test_network_1",
                               model_dir=temp_db_dir, trained=False)

        assert success is True
        assert os.path.exists(os.path.join(temp_db_dir, "networks.db"))

    def test_save_network_with_metadata(self, trained_network, temp_db_dir):
        save_network(trained_network, "trained_network_1", model_dir=temp_db_dir,
                     trained=True, validation_cost=0.125)

        metadata = get_network_metadata("trained_network_1", temp_db_dir)

        assert metadata['network_id'] == "trained_network_1"
        assert metadata['trained'] is True
        assert metadata['validation_cost'] == 0.125
        assert metadata['architecture'] == [3, 4, 2]
        assert metadata['activation_fn'] == 'sigmoid'
        assert metadata['weights_shape'] == [[3, 4], [4, 2]]
        assert metadata['biases_shape'] == [[4], [2]]

    @pytest.mark.parametrize("cost", [-0.1, float('nan'), float('inf')])
    def test_invalid_validation_cost(self, simple_network, temp_db_dir, cost):
        with pytest.raises(ValueError):
            save_network(simple_network, "bad", model_dir=temp_db_dir, validation_cost=cost)

    @pytest.mark.parametrize("network_id", ["", None, 42])
    def test_invalid_network_id(self, simple_network, temp_db_dir, network_id):
        assert save_network(simple_network, network_id, model_dir=temp_db_dir) is False
        assert load_network(network_id, temp_db_dir) is None
        assert delete_network(network_id, temp_db_dir) is False

    def test_load_preserves_parameters(self, trained_network, temp_db_dir):
        save_network(trained_network, "test_network_3", model_dir=temp_db_dir)
        loaded = load_network("test_network_3", temp_db_dir)

        assert isinstance(loaded, Network)
        assert_same_parameters(loaded, trained_network)

    def test_load_nonexistent_network(self, temp_db_dir):
        assert load_network("nonexistent", temp_db_dir) is None
        assert get_network_metadata("nonexistent", temp_db_dir) is None

    def test_corrupt_blob_raises(self, simple_network, temp_db_dir):
        save_network(simple_network, "corrupt", model_dir=temp_db_dir)
        conn = sqlite3.connect(os.path.join(temp_db_dir, "networks.db"))
        conn.execute("UPDATE networks SET network_data = ? WHERE network_id = ?",
                     (sqlite3.Binary(b'garbage'), "corrupt"))
        conn.commit()
        conn.close()

        with pytest.raises(PersistenceError):
            load_network("corrupt", temp_db_dir)

    def test_list_saved_networks(self, simple_network, temp_db_dir):
        assert list_saved_networks(temp_db_dir) == []

        save_network(simple_network, "net1", model_dir=temp_db_dir, validation_cost=0.5)
        save_network(simple_network, "net2", model_dir=temp_db_dir, trained=False)

        networks = list_saved_networks(temp_db_dir)

        assert {net['network_id'] for net in networks} == {"net1", "net2"}
        for net in networks:
            assert 'created_at' in net and 'updated_at' in net

    def test_delete_network(self, simple_network, temp_db_dir):
        save_network(simple_network, "delete_test", model_dir=temp_db_dir)

        assert delete_network("delete_test", temp_db_dir) is True
        assert load_network("delete_test", temp_db_dir) is None
        assert delete_network("delete_test", temp_db_dir) is False

    def test_update_network(self, simple_network, trained_network, temp_db_dir):
        save_network(simple_network, "update_test", model_dir=temp_db_dir, trained=False)
        assert get_network_metadata("update_test", temp_db_dir)['trained'] is False

        save_network(trained_network, "update_test", model_dir=temp_db_dir,
                     trained=True, validation_cost=0.08)

        metadata = get_network_metadata("update_test", temp_db_dir)
        assert metadata['trained'] is True
        assert metadata['validation_cost'] == 0.08
        assert len(list_saved_networks(temp_db_dir)) == 1


@pytest.mark.integration
class TestPersistenceIntegration:
    """Save, reload and keep training."""

    def test_save_load_train_cycle(self, simple_network, temp_db_dir):
        save_network(simple_network, "cycle_test", model_dir=temp_db_dir, trained=False)
        loaded = load_network("cycle_test", temp_db_dir)

        batch = [([0.1, 0.2, 0.3], [1.0, 0.0])] * 4
        result = Trainer(loaded, TrainConfig(learning_rate=0.5, max_epochs=5)).train(
            lambda: list(batch)
        )
        save_network(loaded, "cycle_test", model_dir=temp_db_dir,
                     trained=True, validation_cost=result.train_cost)

        final = load_network("cycle_test", temp_db_dir)
        assert_same_parameters(final, loaded)
        assert not np.array_equal(final.weights[2], simple_network.weights[2])
        assert get_network_metadata("cycle_test", temp_db_dir)['trained'] is True

    def test_multiple_networks_coexist(self, temp_db_dir):
        architectures = {
            "mnist_autoencoder": [196, 30, 196],
            "xor": [3, 4, 1],
            "deep": [10, 20, 20, 10],
        }
        for network_id, layers in architectures.items():
            defn = NetworkDefinition(layers, [1.0] * (len(layers) - 1), 'tanh')
            save_network(Network.from_definition(defn), network_id, model_dir=temp_db_dir)

        assert len(list_saved_networks(temp_db_dir)) == len(architectures)
        for network_id, layers in architectures.items():
            assert load_network(network_id, temp_db_dir).layer_sizes == layers


class TestDeleteOldNetworks:
    """Tests for automatic cleanup of old networks."""

    @pytest.mark.parametrize("age, days, deleted", [
        ('-3 days', 2, 1),
        ('-14 days', 2, 1),
        ('-5 days', 7, 0),
        ('-5 days', 3, 1),
        ('-1 hour', 0, 1),
    ])
    def test_age_threshold(self, simple_network, temp_db_dir, age, days, deleted):
        save_network(simple_network, "aged", model_dir=temp_db_dir)
        age_network(temp_db_dir, "aged", age)

        assert delete_old_networks(days=days, model_dir=temp_db_dir) == deleted
        assert (load_network("aged", temp_db_dir) is None) == bool(deleted)

    def test_preserves_recent(self, simple_network, temp_db_dir):
        save_network(simple_network, "recent", model_dir=temp_db_dir)

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 0
        assert load_network("recent", temp_db_dir) is not None

    def test_mixed_ages(self, simple_network, temp_db_dir):
        for network_id in ("old_1", "old_2", "recent_1", "recent_2"):
            save_network(simple_network, network_id, model_dir=temp_db_dir)
        for network_id in ("old_1", "old_2"):
            age_network(temp_db_dir, network_id, '-3 days')

        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 2
        remaining = {net['network_id'] for net in list_saved_networks(temp_db_dir)}
        assert remaining == {"recent_1", "recent_2"}

    def test_empty_db(self, temp_db_dir):
        assert delete_old_networks(days=2, model_dir=temp_db_dir) == 0

    def test_negative_days(self, temp_db_dir):
        with pytest.raises(ValueError) as exc_info:
            delete_old_networks(days=-1, model_dir=temp_db_dir)
        assert "non-negative" in str(exc_info.value)

    def test_model_database_method(self, simple_network, temp_db_dir):
        db = ModelDatabase(db_path=os.path.join(temp_db_dir, "networks.db"))
        db.save_network_to_db(simple_network, "test_network", trained=False)
        age_network(temp_db_dir, "test_network", '-3 days')

        assert db.delete_old_networks_from_db(days=2) == 1
        assert db.load_network_from_db("test_network") is None
