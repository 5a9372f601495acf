"""Tests for control plane startup"""

from unittest.mock import MagicMock, patch

import main
from api import shared_api_logic as services
from metrics import METRICS


class TestStartup:
    """Test suite for main entry point wiring"""

    def test_initialize_metrics_counts_subnetsets(self, session_factory):
        db = session_factory()
        services.create_subnetset_logic(db, "ns1", "web")
        services.create_subnetset_logic(db, "ns1", "api")
        db.close()

        with patch("main.SessionLocal", session_factory):
            main.initialize_metrics()

        assert METRICS["subnetsets_total"]._value.get() == 2

    @patch("main.SessionLocal")
    def test_initialize_metrics_survives_database_error(self, mock_session_local):
        mock_db = MagicMock()
        mock_db.query.side_effect = Exception("Database error")
        mock_session_local.return_value = mock_db

        main.initialize_metrics()

        mock_db.close.assert_called_once()

    @patch("main.start_rest_api")
    @patch("main.get_controller")
    @patch("main.initialize_metrics")
    def test_main_starts_and_stops_controller(self, mock_init, mock_get_controller, mock_start_rest):
        controller = MagicMock()
        mock_get_controller.return_value = controller

        main.main()

        mock_init.assert_called_once()
        controller.start.assert_called_once()
        mock_start_rest.assert_called_once()
        controller.stop.assert_called_once()

    def test_controller_start_queues_existing_subnetsets(self, controller, db):
        services.create_subnetset_logic(db, "ns1", "web")
        controller.engine.start = MagicMock()
        controller.gc.start = MagicMock()

        controller.start()

        assert len(controller.engine.queue) == 1
        controller.engine.start.assert_called_once()
        controller.gc.start.assert_called_once()
