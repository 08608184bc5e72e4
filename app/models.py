from sqlalchemy import (BigInteger, Column, Integer, Text, DateTime, ForeignKey, Double)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base, Document


class Route(Base):
    __tablename__ = "routes"
    id              = Column(Integer, primary_key=True, index=True)
    route_name      = Column(Text, nullable=False)
    route_path      = Column(Document, nullable=False, default=list)   # [[lng, lat], ...]
    route_length    = Column(Double, nullable=False, default=0)       # metres
    start_location  = Column(Document, nullable=False)
    end_location    = Column(Document, nullable=False)
    via_locations   = Column(Document, nullable=False, default=list)
    rules           = Column(Document, nullable=False, default=dict)
    created_at      = Column(DateTime(timezone=True), server_default=func.now())


class Trip(Base):
    __tablename__ = "trips"
    id                  = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, index=True)
    trip_name           = Column(Text)
    device_id           = Column(Text, index=True, nullable=False)
    route_id            = Column(Integer, ForeignKey("routes.id"), nullable=False)

    planned_start_time  = Column(DateTime(timezone=True), nullable=False)
    actual_start_time   = Column(DateTime(timezone=True))
    actual_end_time     = Column(DateTime(timezone=True))
    last_check_time     = Column(DateTime(timezone=True))
    end_reason          = Column(Text)

    trip_stage          = Column(Text, index=True, nullable=False, default="Planned")
    active_status       = Column(Document, nullable=False, default=lambda: {"kind": "Inactive", "name": None})
    movement_status     = Column(Text, nullable=False, default="Unknown")
    current_significant_location = Column(Document)
    rule_status         = Column(Document, nullable=False, default=dict)

    distance_covered      = Column(Double, default=0)   # metres along the route
    distance_remaining    = Column(Double, default=0)   # metres
    completion_percentage = Column(Double, default=0)
    truck_run_distance    = Column(Double, default=0)   # metres driven (in-motion pairs only)
    run_duration          = Column(Double, default=0)   # seconds
    average_speed         = Column(Double, default=0)   # km/h
    top_speed             = Column(Double, default=0)   # km/h
    current_halt_duration = Column(Integer, default=0)  # minutes
    halt_start_time       = Column(DateTime(timezone=True))
    parked_duration       = Column(Integer, default=0)  # minutes

    fuel_consumption        = Column(Double)
    fuel_efficiency         = Column(Double)
    current_fuel_level      = Column(Double)
    fuel_status_update_time = Column(DateTime(timezone=True))

    # append-only histories
    significant_locations = Column(Document, nullable=False, default=list)
    significant_events    = Column(Document, nullable=False, default=list)
    trip_path             = Column(Document, nullable=False, default=list)
    fuel_events           = Column(Document, nullable=False, default=list)

    route = relationship(Route, lazy="joined", innerjoin=True)
