"""
History Store for the IoT Machine Control System
Append-only audit tables and the machine registry, kept in SQLite or PostgreSQL
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import pandas as pd
from sqlalchemy import (
    create_engine, make_url, Column, Integer, String, Float, DateTime,
    Boolean, JSON, Text, Index
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, scoped_session, Session
from sqlalchemy.pool import NullPool, StaticPool

from ..config.settings import DatabaseConfig

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_MACHINES = [
    {'machineId': 'CNC-001', 'name': '5-Axis CNC Mill', 'type': 'cnc', 'location': 'Machining Cell A', 'status': 'idle'},
    {'machineId': 'CNC-002', 'name': 'CNC Lathe', 'type': 'cnc', 'location': 'Machining Cell B', 'status': 'idle'},
    {'machineId': 'IM-001', 'name': 'Injection Molder 200T', 'type': 'injection', 'location': 'Molding Line 1', 'status': 'idle'},
    {'machineId': 'IM-002', 'name': 'Injection Molder 500T', 'type': 'injection', 'location': 'Molding Line 2', 'status': 'idle'},
    {'machineId': 'ROB-001', 'name': '6-Axis Assembly Robot', 'type': 'robot', 'location': 'Assembly Station 1', 'status': 'idle'},
    {'machineId': 'ROB-002', 'name': 'SCARA Robot', 'type': 'robot', 'location': 'Assembly Station 2', 'status': 'idle'},
    {'machineId': 'CV-001', 'name': 'Main Conveyor Line', 'type': 'conveyor', 'location': 'Production Line', 'status': 'idle'},
    {'machineId': 'CV-002', 'name': 'Packaging Conveyor', 'type': 'conveyor', 'location': 'Packaging Area', 'status': 'idle'},
    {'machineId': 'QC-001', 'name': 'Vision Inspection System', 'type': 'quality', 'location': 'Final Inspection', 'status': 'idle'},
    {'machineId': 'QC-002', 'name': 'Laser Measurement', 'type': 'quality', 'location': 'Quality Lab', 'status': 'idle'},
]


# Database Models
class MachineRecord(Base):
    """Machine registry"""
    __tablename__ = 'machines'

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(String(64), nullable=False, unique=True)
    name = Column(String(200))
    type = Column(String(50))
    location = Column(String(200))
    status = Column(String(20), default='idle')
    last_status_update = Column(DateTime)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'machineId': self.machine_id,
            'name': self.name,
            'type': self.type,
            'location': self.location,
            'status': self.status
        }


class TelemetryRecord(Base):
    """Raw telemetry readings"""
    __tablename__ = 'telemetry'

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(String(64), nullable=False)
    plant_id = Column(String(64))
    ts = Column(DateTime, nullable=False)
    temp = Column(Float)
    vibration = Column(Float)
    power = Column(Float)
    raw = Column(JSON)

    __table_args__ = (
        Index('idx_telemetry_machine_ts', 'machine_id', 'ts'),
    )


class MachineCondition(Base):
    """Evaluation results"""
    __tablename__ = 'machine_conditions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(String(64), nullable=False)
    plant_id = Column(String(64))
    timestamp = Column(DateTime, nullable=False, default=datetime.now)
    telemetry = Column(JSON)
    evaluation = Column(JSON)
    auto_action_taken = Column(Boolean, default=False)

    __table_args__ = (
        Index('idx_conditions_machine_time', 'machine_id', 'timestamp'),
    )


class AutoAction(Base):
    """System-issued safety actions"""
    __tablename__ = 'auto_actions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(String(64), nullable=False)
    plant_id = Column(String(64))
    action = Column(String(50), nullable=False)
    reason = Column(Text)
    alerts = Column(JSON)
    req_id = Column(String(80))
    timestamp = Column(DateTime, nullable=False, default=datetime.now)


class MaintenanceTicket(Base):
    """Maintenance tickets opened from vibration warnings"""
    __tablename__ = 'maintenance_tickets'

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(String(64), nullable=False)
    plant_id = Column(String(64))
    type = Column(String(30), default='preventive')
    reason = Column(Text)
    priority = Column(String(20), default='medium')
    status = Column(String(20), default='pending')
    alerts = Column(JSON)
    created = Column(DateTime, nullable=False, default=datetime.now)


class ManualCommand(Base):
    """Operator-issued commands"""
    __tablename__ = 'manual_commands'

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(String(64), nullable=False)
    plant_id = Column(String(64))
    command = Column(String(50), nullable=False)
    operator = Column(String(100))
    user_role = Column(String(30))
    req_id = Column(String(80), index=True)
    previous_state = Column(String(20))
    new_state = Column(String(20))
    timestamp = Column(DateTime, nullable=False, default=datetime.now)


class CommandAck(Base):
    """Device acknowledgements of issued commands"""
    __tablename__ = 'command_acks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    req_id = Column(String(80), nullable=False, index=True)
    machine_id = Column(String(64))
    status = Column(String(30))
    acknowledged_by = Column(String(30), default='machine')
    ts_ack = Column(DateTime, nullable=False, default=datetime.now)


class AlertRecord(Base):
    """Threshold alerts raised from telemetry"""
    __tablename__ = 'alerts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(String(64), nullable=False)
    plant_id = Column(String(64))
    ts = Column(DateTime, nullable=False, default=datetime.now)
    type = Column(String(30))
    value = Column(Float)
    threshold = Column(Float)
    acknowledged = Column(Boolean, default=False)


class HistoryStore:
    """
    Append/query interface over the history database

    Append methods return the new row id, or None when the write failed. A
    failed write is logged and never raised: control logic keeps running when
    the database is unavailable.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None, create_tables: bool = True):
        """
        Initialize history store

        Args:
            config: Database configuration object
            create_tables: Whether to create tables on init
        """
        self.config = config or DatabaseConfig()
        self.engine = self._create_engine()
        self.SessionFactory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.Session = scoped_session(self.SessionFactory)
        self._write_lock = threading.Lock()
        self.failed_writes = 0

        if create_tables:
            self.create_tables()

        logger.info(f"HistoryStore initialized with {self.engine.dialect.name} backend")

    def _create_engine(self):
        """Create SQLAlchemy engine"""
        url = self.config.url

        if self.config.is_sqlite:
            database = make_url(url).database
            in_memory = database in (None, '', ':memory:')
            if not in_memory:
                Path(database).parent.mkdir(parents=True, exist_ok=True)
            return create_engine(
                url,
                echo=self.config.echo,
                # A single shared connection keeps an in-memory database alive
                poolclass=StaticPool if in_memory else NullPool,
                connect_args={'check_same_thread': False}
            )

        return create_engine(
            url,
            echo=self.config.echo,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True
        )

    def create_tables(self):
        """Create all history tables"""
        try:
            Base.metadata.create_all(self.engine)
            logger.info("History tables created successfully")
        except SQLAlchemyError as e:
            logger.error(f"Error creating tables: {e}")
            raise

    @contextmanager
    def get_session(self) -> Session:
        """
        Get database session with automatic cleanup

        Yields:
            Database session
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            self.Session.remove()

    def _append(self, description: str, build: Callable[[], Base]) -> Optional[int]:
        """Insert one row, logging instead of raising on database errors"""
        try:
            with self._write_lock, self.get_session() as session:
                row = build()
                session.add(row)
                session.flush()
                return row.id
        except SQLAlchemyError as e:
            self.failed_writes += 1
            logger.error(f"History write failed ({description}): {e}")
            return None

    # ------------------------------------------------------------------
    # Machine registry
    # ------------------------------------------------------------------

    def load_machines(self) -> List[Dict[str, Any]]:
        """Read the machine registry"""
        with self.get_session() as session:
            return [row.to_dict() for row in session.query(MachineRecord).order_by(MachineRecord.id)]

    def seed_default_machines(self, machines: Sequence[Dict[str, Any]] = DEFAULT_MACHINES) -> int:
        """
        Insert registry machines that do not exist yet

        Returns:
            Number of machines created
        """
        created = 0
        with self._write_lock, self.get_session() as session:
            existing = {row.machine_id for row in session.query(MachineRecord.machine_id)}
            for machine in machines:
                if machine['machineId'] in existing:
                    continue
                session.add(MachineRecord(
                    machine_id=machine['machineId'],
                    name=machine.get('name'),
                    type=machine.get('type'),
                    location=machine.get('location'),
                    status=machine.get('status', 'idle')
                ))
                created += 1
                logger.info(f"Created machine: {machine['machineId']}")
        return created

    def update_machine_status(self, machine_id: str, status: str) -> bool:
        """Store the latest device-reported status in the registry"""
        try:
            with self._write_lock, self.get_session() as session:
                updated = session.query(MachineRecord).filter(
                    MachineRecord.machine_id == machine_id
                ).update({'status': status, 'last_status_update': datetime.now()})
                return updated > 0
        except SQLAlchemyError as e:
            self.failed_writes += 1
            logger.error(f"History write failed (machine status {machine_id}): {e}")
            return False

    # ------------------------------------------------------------------
    # Append-only records
    # ------------------------------------------------------------------

    def record_telemetry(self, reading) -> Optional[int]:
        """Persist a TelemetryReading"""
        return self._append('telemetry', lambda: TelemetryRecord(
            machine_id=reading.machine_id,
            plant_id=reading.plant_id,
            ts=reading.timestamp,
            temp=reading.temperature,
            vibration=reading.vibration,
            power=reading.power,
            raw=reading.raw_payload
        ))

    def record_condition(self, reading, evaluation: Dict[str, Any],
                         auto_action_taken: bool = False) -> Optional[int]:
        """Persist the verdict for a reading"""
        return self._append('machine_conditions', lambda: MachineCondition(
            machine_id=reading.machine_id,
            plant_id=reading.plant_id,
            timestamp=datetime.now(),
            telemetry={'temp': reading.temperature, 'vibration': reading.vibration, 'power': reading.power},
            evaluation=evaluation,
            auto_action_taken=auto_action_taken
        ))

    def record_auto_action(self, machine_id: str, plant_id: str, action: str, reason: str,
                           alerts: List[Dict[str, Any]], req_id: str) -> Optional[int]:
        return self._append('auto_actions', lambda: AutoAction(
            machine_id=machine_id,
            plant_id=plant_id,
            action=action,
            reason=reason,
            alerts=alerts,
            req_id=req_id,
            timestamp=datetime.now()
        ))

    def record_maintenance_ticket(self, machine_id: str, plant_id: str, reason: str,
                                  alerts: List[Dict[str, Any]], priority: str = 'medium',
                                  ticket_type: str = 'preventive') -> Optional[int]:
        return self._append('maintenance_tickets', lambda: MaintenanceTicket(
            machine_id=machine_id,
            plant_id=plant_id,
            type=ticket_type,
            reason=reason,
            priority=priority,
            status='pending',
            alerts=alerts,
            created=datetime.now()
        ))

    def record_manual_command(self, machine_id: str, plant_id: str, command: str, operator: str,
                              role: str, req_id: str, previous_state: str,
                              new_state: str) -> Optional[int]:
        return self._append('manual_commands', lambda: ManualCommand(
            machine_id=machine_id,
            plant_id=plant_id,
            command=command,
            operator=operator,
            user_role=role,
            req_id=req_id,
            previous_state=previous_state,
            new_state=new_state,
            timestamp=datetime.now()
        ))

    def record_command_ack(self, req_id: str, machine_id: str, status: str) -> Optional[int]:
        return self._append('command_acks', lambda: CommandAck(
            req_id=req_id,
            machine_id=machine_id,
            status=status,
            acknowledged_by='machine',
            ts_ack=datetime.now()
        ))

    def record_alert(self, machine_id: str, plant_id: str, alert_type: str,
                     value: float, threshold: float) -> Optional[int]:
        return self._append('alerts', lambda: AlertRecord(
            machine_id=machine_id,
            plant_id=plant_id,
            ts=datetime.now(),
            type=alert_type,
            value=value,
            threshold=threshold,
            acknowledged=False
        ))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _query_frame(self, model, order_column, machine_id: Optional[str] = None,
                     limit: int = 200) -> pd.DataFrame:
        """Newest-first rows of one table as a DataFrame"""
        with self.get_session() as session:
            query = session.query(model)
            if machine_id:
                query = query.filter(model.machine_id == machine_id)
            query = query.order_by(order_column.desc(), model.id.desc()).limit(limit)

            columns = [column.name for column in model.__table__.columns]
            records = [{name: getattr(row, name) for name in columns} for row in query]
            return pd.DataFrame(records, columns=columns)

    def get_telemetry(self, machine_id: str, limit: int = 200) -> pd.DataFrame:
        return self._query_frame(TelemetryRecord, TelemetryRecord.ts, machine_id, limit)

    def get_conditions(self, machine_id: str, limit: int = 50) -> pd.DataFrame:
        return self._query_frame(MachineCondition, MachineCondition.timestamp, machine_id, limit)

    def get_alerts(self, limit: int = 200) -> pd.DataFrame:
        return self._query_frame(AlertRecord, AlertRecord.ts, limit=limit)

    def get_auto_actions(self, machine_id: Optional[str] = None, limit: int = 200) -> pd.DataFrame:
        return self._query_frame(AutoAction, AutoAction.timestamp, machine_id, limit)

    def get_maintenance_tickets(self, machine_id: Optional[str] = None, limit: int = 200) -> pd.DataFrame:
        return self._query_frame(MaintenanceTicket, MaintenanceTicket.created, machine_id, limit)

    def get_manual_commands(self, machine_id: Optional[str] = None, limit: int = 200) -> pd.DataFrame:
        return self._query_frame(ManualCommand, ManualCommand.timestamp, machine_id, limit)

    def get_command_acks(self, machine_id: Optional[str] = None, limit: int = 200) -> pd.DataFrame:
        return self._query_frame(CommandAck, CommandAck.ts_ack, machine_id, limit)

    def close(self):
        """Close database connections"""
        self.Session.remove()
        self.engine.dispose()
        logger.info("History store connections closed")
