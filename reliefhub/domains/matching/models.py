"""
匹配领域ORM模型

表: emergencies, relief_resources, match_records
match_records 以 (emergency_id, resource_id) 为联合主键，是匹配状态的唯一权威来源；
需求点与资源表不冗余保存匹配状态。
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, ForeignKey, JSON, CheckConstraint, Index
)

from reliefhub.core.database import Base


class EmergencyModel(Base):
    """
    需求点表 ORM 模型

    业务说明:
    - 由上报流程创建，位置已完成地理编码
    - resources_needed 为有序需求列表 [{type, quantity, details, fulfilled}]
    """
    __tablename__ = "emergencies"

    # ==================== 主键 ====================
    id: str = Column(String(64), primary_key=True)

    # ==================== 基本信息 ====================
    title: str = Column(String(200), nullable=False, default="", comment="标题")
    type: str = Column(String(50), nullable=False, comment="需求点类别")
    status: str = Column(
        String(20),
        nullable=False,
        default="pending",
        comment="状态: pending/active/resolved/cancelled"
    )
    urgency: str = Column(
        String(20),
        nullable=False,
        default="medium",
        comment="紧急度: low/medium/high/critical"
    )

    # ==================== 位置 ====================
    longitude: float = Column(Float, nullable=False, comment="经度")
    latitude: float = Column(Float, nullable=False, comment="纬度")

    # ==================== 需求 ====================
    quantity: int = Column(Integer, nullable=False, default=1, comment="按自身类别上报时的需求数量")
    people_affected: int = Column(Integer, nullable=False, default=1)
    resources_needed: list[dict[str, Any]] = Column(JSON, nullable=False, default=list)

    # ==================== 人员 ====================
    owner_id: Optional[str] = Column(String(64), comment="上报人")
    assigned_to: Optional[str] = Column(String(64), comment="指派的志愿者")

    # ==================== 时间戳 ====================
    created_at: datetime = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at: datetime = Column(
        DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_emergencies_status_type", "status", "type"),
    )


class ResourceModel(Base):
    """
    资源表 ORM 模型

    业务说明:
    - 物资或志愿者，数量必须大于0
    - status 由匹配状态机推进: available → reserved → delivered
    """
    __tablename__ = "relief_resources"

    id: str = Column(String(64), primary_key=True)
    name: str = Column(String(200), nullable=False, default="")
    type: str = Column(String(50), nullable=False, comment="资源类别")
    quantity: int = Column(Integer, nullable=False)
    unit: str = Column(String(20), nullable=False, default="unit")
    status: str = Column(
        String(20),
        nullable=False,
        default="available",
        comment="状态: available/reserved/in-transit/delivered/cancelled/allocated"
    )

    longitude: float = Column(Float, nullable=False)
    latitude: float = Column(Float, nullable=False)

    owner_id: Optional[str] = Column(String(64), comment="资源提供者")
    assigned_to: Optional[str] = Column(String(64), comment="指派的志愿者")

    created_at: datetime = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at: datetime = Column(
        DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_relief_resources_quantity_positive"),
        Index("ix_relief_resources_status_type", "status", "type"),
    )


class MatchRecordModel(Base):
    """匹配记录表 ORM 模型"""
    __tablename__ = "match_records"

    emergency_id: str = Column(
        String(64),
        ForeignKey("emergencies.id", ondelete="CASCADE"),
        primary_key=True,
    )
    resource_id: str = Column(
        String(64),
        ForeignKey("relief_resources.id", ondelete="CASCADE"),
        primary_key=True,
    )
    status: str = Column(
        String(20),
        nullable=False,
        default="pending",
        comment="状态: pending/accepted/rejected/delivered"
    )
    match_score: int = Column(Integer, nullable=False)

    created_at: datetime = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at: datetime = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("match_score >= 0 AND match_score <= 100", name="ck_match_records_score_range"),
        Index("ix_match_records_resource_id", "resource_id"),
    )
