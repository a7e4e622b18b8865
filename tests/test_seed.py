"""Tests for the demo data loader"""
import pytest

from snackzo.backend import eq
from snackzo.eta import DeliveryEstimator
from snackzo.seed import load_demo_backend, make_delivery_estimate_rpc, read_table


class TestSeed:
    """CSV loading, type coercion and the local estimate function"""

    @pytest.fixture
    def tmp_data_dir(self, tmp_path):
        """Minimal data directory with one runner and a metrics history"""
        data_dir = tmp_path / "data"
        data_dir.mkdir()
        (data_dir / "runners.csv").write_text(
            "id,name,is_online,current_lat,current_lng\n"
            "r-1,Test Runner,true,12.97,79.15\n"
            "r-2,Offline Runner,false,,\n"
        )
        (data_dir / "delivery_metrics.csv").write_text(
            "id,runner_id,delivery_time_minutes\n"
            "m-1,r-1,8\n"
            "m-2,r-1,10\n"
        )
        return str(data_dir)

    def test_demo_data_loads(self, backend):
        assert backend.count("runners") == 3
        assert backend.count("orders") == 6
        assert backend.count("delivery_metrics") == 17

    def test_types_are_coerced(self, backend):
        runner = backend.select_one("runners", [eq("id", "r-001")])
        assert runner["is_online"] is True
        assert isinstance(runner["current_lat"], float)

        offline = backend.select_one("runners", [eq("id", "r-003")])
        assert offline["current_lat"] is None

        order = backend.select_one("orders", [eq("is_express", True)])
        assert order["id"].startswith("7b1d2e3f")

        deal = backend.select_one("flash_deals", [eq("id", "fd-1")])
        assert deal["product_ids"] == ["p-maggi", "p-yippee"]
        assert deal["usage_limit"] == 100

    def test_custom_dir_skips_missing_tables(self, tmp_data_dir):
        db = load_demo_backend(tmp_data_dir)
        assert db.count("runners") == 2
        assert db.count("orders") == 0

    def test_local_estimate_function(self, tmp_data_dir):
        db = load_demo_backend(tmp_data_dir)
        assert db.rpc(DeliveryEstimator.RPC_NAME, {"p_runner_id": "r-1", "p_time_of_day": "morning"}) == 9
        assert db.rpc(DeliveryEstimator.RPC_NAME, {"p_runner_id": "r-1", "p_time_of_day": "evening"}) == 12
        assert db.rpc(DeliveryEstimator.RPC_NAME, {"p_runner_id": None, "p_time_of_day": "night"}) == 14

    def test_estimate_never_below_one_minute(self, tmp_data_dir):
        db = load_demo_backend(tmp_data_dir)
        db.load("delivery_metrics", [{"runner_id": "r-fast", "delivery_time_minutes": 0.5}])
        estimate = make_delivery_estimate_rpc(db)
        assert estimate(p_runner_id="r-fast", p_time_of_day="night") == 1

    def test_bad_value_names_line(self, tmp_path):
        path = tmp_path / "runners.csv"
        path.write_text("id,current_lat\nr-1,12.9\nr-2,north\n")
        with pytest.raises(ValueError, match="line 3"):
            read_table(str(path), "runners")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_table(str(tmp_path / "runners.csv"), "runners")
