"""
Unit tests for database functionality.
"""

import pytest
from unittest.mock import patch, MagicMock
from sqlalchemy.exc import SQLAlchemyError

from core.database import get_db, get_db_context, create_tables
from core.exceptions import PreconditionError
from models import Clinic
from utils.datetime_utils import MOSCOW_TZ


class TestDatabaseFunctions:
    """Test cases for database utility functions."""

    @patch('core.database.SessionLocal')
    def test_get_db_closes_session(self, mock_session_local):
        """Test successful database session creation and cleanup."""
        mock_session = MagicMock()
        mock_session_local.return_value = mock_session

        db_iter = get_db()
        assert next(db_iter) == mock_session
        with pytest.raises(StopIteration):
            next(db_iter)

        mock_session.close.assert_called_once()

    @patch('core.database.SessionLocal')
    def test_get_db_rolls_back_on_error(self, mock_session_local):
        mock_session = MagicMock()
        mock_session_local.return_value = mock_session

        db_iter = get_db()
        next(db_iter)
        with pytest.raises(SQLAlchemyError):
            db_iter.throw(SQLAlchemyError("boom"))

        mock_session.rollback.assert_called_once()
        mock_session.close.assert_called_once()

    @patch('core.database.SessionLocal')
    @patch('core.database.logger')
    def test_get_db_business_error_rolls_back_without_logging(self, mock_logger, mock_session_local):
        mock_session = MagicMock()
        mock_session_local.return_value = mock_session

        db_iter = get_db()
        next(db_iter)
        with pytest.raises(PreconditionError):
            db_iter.throw(PreconditionError("Referral 1 is already settled"))

        mock_session.rollback.assert_called_once()
        mock_logger.exception.assert_not_called()

    @patch('core.database.SessionLocal')
    def test_get_db_context_success(self, mock_session_local):
        """Test successful database context manager."""
        mock_session = MagicMock()
        mock_session_local.return_value = mock_session

        with get_db_context() as db:
            assert db == mock_session

        mock_session.commit.assert_called_once()
        mock_session.close.assert_called_once()

    @patch('core.database.SessionLocal')
    def test_get_db_context_with_exception(self, mock_session_local):
        """Test database context manager with exception."""
        mock_session = MagicMock()
        mock_session_local.return_value = mock_session

        with pytest.raises(ValueError):
            with get_db_context():
                raise ValueError("Test exception")

        mock_session.rollback.assert_called_once()
        mock_session.close.assert_called_once()
        mock_session.commit.assert_not_called()

    @patch('core.database.Base')
    @patch('core.database.engine')
    def test_create_tables_success(self, mock_engine, mock_base):
        """Test successful table creation."""
        create_tables()

        mock_base.metadata.create_all.assert_called_once_with(bind=mock_engine)

    @patch('core.database.Base')
    @patch('core.database.engine')
    def test_create_tables_with_exception(self, mock_engine, mock_base):
        """Test table creation with SQLAlchemy error."""
        mock_base.metadata.create_all.side_effect = SQLAlchemyError("Test error")

        with pytest.raises(SQLAlchemyError):
            create_tables()


class TestTimestampListeners:

    def test_created_and_updated_at_set_on_insert(self, db_session):
        clinic = Clinic(name="Клиника")
        db_session.add(clinic)
        db_session.commit()

        assert clinic.created_at is not None
        assert clinic.created_at.utcoffset() == MOSCOW_TZ.utcoffset(None)
