"""
匹配领域数据模型（Pydantic Schemas）

需求点(Emergency)与资源(Resource)只保存对方ID，
匹配状态与分数以 MatchRecord 为唯一权威来源，按 (emergency_id, resource_id) 寻址。
MatchRef 是从 MatchRecord 投影出的只读视图。
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, ConfigDict


def _new_id() -> str:
    return uuid4().hex


def enum_value(value: Any) -> Any:
    """枚举转原始值，字符串原样返回"""
    return getattr(value, "value", value)


def pair_key(emergency_id: str, resource_id: str) -> str:
    """匹配记录主键"""
    return f"{emergency_id}:{resource_id}"


def pair_lock_key(emergency_id: str, resource_id: str) -> str:
    return f"match:{pair_key(emergency_id, resource_id)}"


def resource_lock_key(resource_id: str) -> str:
    return f"resource:{resource_id}"


# ==================== 枚举 ====================

class ResourceType(str, Enum):
    """资源类别"""
    water = "water"
    food = "food"
    medical = "medical"
    shelter = "shelter"
    clothing = "clothing"
    transport = "transport"
    volunteers = "volunteers"
    other = "other"


class EmergencyType(str, Enum):
    """需求点类别（灾种 + 可直接按资源类别上报）"""
    medical = "medical"
    fire = "fire"
    flood = "flood"
    earthquake = "earthquake"
    hurricane = "hurricane"
    tornado = "tornado"
    tsunami = "tsunami"
    landslide = "landslide"
    shelter = "shelter"
    water = "water"
    food = "food"
    clothing = "clothing"
    transport = "transport"
    volunteers = "volunteers"
    other = "other"


class Urgency(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class EmergencyStatus(str, Enum):
    pending = "pending"
    active = "active"
    resolved = "resolved"
    cancelled = "cancelled"


class ResourceStatus(str, Enum):
    available = "available"
    reserved = "reserved"
    in_transit = "in-transit"
    delivered = "delivered"
    cancelled = "cancelled"
    allocated = "allocated"


class MatchStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"
    delivered = "delivered"

    @property
    def is_terminal(self) -> bool:
        return self in (MatchStatus.rejected, MatchStatus.delivered)


class MatchAction(str, Enum):
    accept = "accept"
    reject = "reject"
    deliver = "deliver"


class ActorRole(str, Enum):
    user = "user"
    volunteer = "volunteer"
    admin = "admin"


class EntityKind(str, Enum):
    """存储实体类别"""
    emergency = "emergency"
    resource = "resource"
    match = "match"


class MatchEventType(str, Enum):
    resource_matched = "resource_matched"
    match_accepted = "match_accepted"
    match_rejected = "match_rejected"
    resource_delivered = "resource_delivered"


class NotificationPriority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"


class RankingStatus(str, Enum):
    success = "success"
    infeasible = "infeasible"  # 无符合条件的候选，合法的空结果
    error = "error"


# ==================== 实体 ====================

class Location(BaseModel):
    longitude: float = Field(..., ge=-180, le=180)
    latitude: float = Field(..., ge=-90, le=90)


class ResourceNeed(BaseModel):
    """需求点的单项物资需求"""
    type: ResourceType
    quantity: int = Field(1, ge=1, description="需求数量")
    details: Optional[str] = None
    fulfilled: bool = False


class Emergency(BaseModel):
    """需求点（紧急事件）"""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=_new_id)
    title: str = ""
    type: EmergencyType
    status: EmergencyStatus = EmergencyStatus.pending
    urgency: Urgency = Urgency.medium
    location: Location
    quantity: int = Field(1, ge=1, description="按自身类别上报时的需求数量")
    people_affected: int = Field(1, ge=0)
    resources_needed: list[ResourceNeed] = Field(default_factory=list)
    owner_id: Optional[str] = Field(None, description="上报人")
    assigned_to: Optional[str] = Field(None, description="指派的志愿者")
    matched_resource_ids: list[str] = Field(default_factory=list, description="匹配记录引用")

    def demand_for(self, resource_type: Any) -> Optional[ResourceNeed]:
        """
        该需求点对某类资源的需求

        优先取第一条同类别且未满足的需求；未声明该类别需求时，
        若自身类别与资源类别相同，以 quantity 作为需求数量。
        """
        wanted = enum_value(resource_type)
        declared = False
        for need in self.resources_needed:
            if enum_value(need.type) != wanted:
                continue
            declared = True
            if not need.fulfilled:
                return need
        if not declared and enum_value(self.type) == wanted:
            return ResourceNeed(type=wanted, quantity=self.quantity)
        return None

    def fulfill_need(self, resource_type: Any) -> Optional[ResourceNeed]:
        """标记第一条同类别未满足的需求为已满足"""
        wanted = enum_value(resource_type)
        for need in self.resources_needed:
            if enum_value(need.type) == wanted and not need.fulfilled:
                need.fulfilled = True
                return need
        return None


class Resource(BaseModel):
    """可调配资源（物资/志愿者）"""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=_new_id)
    name: str = ""
    type: ResourceType
    quantity: int = Field(..., gt=0)
    unit: str = "unit"
    status: ResourceStatus = ResourceStatus.available
    location: Location
    owner_id: Optional[str] = Field(None, description="资源提供者")
    assigned_to: Optional[str] = Field(None, description="指派的志愿者")
    matched_emergency_ids: list[str] = Field(default_factory=list, description="匹配记录引用")


class MatchRef(BaseModel):
    """匹配记录在单侧实体上的投影"""
    counterpart_id: str
    status: MatchStatus
    match_score: int = Field(..., ge=0, le=100)


class MatchRecord(BaseModel):
    """一对需求点-资源的权威匹配状态"""
    model_config = ConfigDict(from_attributes=True)

    emergency_id: str
    resource_id: str
    status: MatchStatus = MatchStatus.pending
    match_score: int = Field(..., ge=0, le=100)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def key(self) -> str:
        return pair_key(self.emergency_id, self.resource_id)

    def ref_for_emergency(self) -> MatchRef:
        return MatchRef(
            counterpart_id=self.resource_id,
            status=self.status,
            match_score=self.match_score,
        )

    def ref_for_resource(self) -> MatchRef:
        return MatchRef(
            counterpart_id=self.emergency_id,
            status=self.status,
            match_score=self.match_score,
        )


class Actor(BaseModel):
    """操作人"""
    actor_id: str
    role: ActorRole = ActorRole.user


# ==================== 排序结果 ====================

class RankedResource(BaseModel):
    resource_id: str
    distance_km: float = Field(..., description="距离（km，两位小数）")
    match_score: int


class RankedEmergency(BaseModel):
    emergency_id: str
    distance_km: float = Field(..., description="距离（km，两位小数）")
    match_score: int


class ResourceRankingResponse(BaseModel):
    emergency_id: str
    items: list[RankedResource]
    total: int
    status: RankingStatus
    message: str = ""


class EmergencyRankingResponse(BaseModel):
    resource_id: str
    items: list[RankedEmergency]
    total: int
    status: RankingStatus
    message: str = ""


# ==================== 状态迁移 ====================

class MatchEvent(BaseModel):
    """匹配领域事件（交给通知组件投递）"""
    event_type: MatchEventType
    recipient_id: Optional[str]
    emergency_id: str
    resource_id: str
    match_status: MatchStatus
    match_score: int
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.normal
    actor_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None


class MatchTransitionResponse(BaseModel):
    """迁移后的匹配对状态"""
    emergency_id: str
    resource_id: str
    status: MatchStatus
    match_score: int
    resource_status: ResourceStatus
    emergency_ref: MatchRef
    resource_ref: MatchRef
    fulfilled_need: Optional[ResourceType] = None


class ProposeSummary(BaseModel):
    """批量建立匹配记录的结果"""
    created: list[MatchRef]
    skipped: list[str] = Field(default_factory=list, description="已存在匹配的对方ID")


class NearbyResource(BaseModel):
    """半径内的可用资源"""
    resource: Resource
    distance_km: float


class NearbyEmergency(BaseModel):
    """半径内的进行中需求点"""
    emergency: Emergency
    distance_km: float
