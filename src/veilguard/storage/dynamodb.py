"""DynamoDB trust store - single-table backend for multi-instance deployments.

Item layout (``pk`` / ``sk``, one GSI ``gsi1_pk-gsi1_sk-index`` and one
GSI ``gsi2_pk-gsi2_sk-index``):

    DEVICE#<token>        META                 device
    DEVICE#<token>        PERSONA#<id>         persona link
    DEVICE#<token>        REQ#<bucket ts>      request bucket counter
    DEVICE#<token>        SESSION              session
    DEVICE#<token>        SCORE#<ts>#<id>      anomaly score
    EVENTS#<token>        EVENT#<ts>#<id>      audit event
    ACTOR#<actor>         LEDGER#<type>        rate-limit ledger
    ACTOR#<actor>         ACTION#<ts>#<id>     action record
    FLAG#<id>             META                 review flag
    OPENFLAG#<type>#<id>  MARKER               unique open-flag marker

Counters use ``ADD``; creation, revocation and every compare-and-set use a
``ConditionExpression`` so that no read-modify-write happens client side.
"""

import logging, os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import boto3
from botocore.exceptions import ClientError, EndpointConnectionError

from veilguard.common.constants import AuditConstants
from veilguard.common.exceptions import ConfigurationError, TransientError
from veilguard.common.time_utils import parse_timestamp
from veilguard.core.types import ReviewStatus, Severity, SubjectType
from veilguard.data.schemas import (
    ActionLedger,
    ActionRecord,
    AnomalyScore,
    AuditEvent,
    Device,
    PersonaLink,
    ReviewFlag,
    Session,
)
from veilguard.storage.base import TrustStore

logger = logging.getLogger(__name__)


TRANSIENT_ERROR_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionConflictException",
}
CONDITION_FAILED = "ConditionalCheckFailedException"
KEY_ATTRIBUTES = ("pk", "sk", "gsi1_pk", "gsi1_sk", "gsi2_pk", "gsi2_sk", "entity_type", "ttl_timestamp")
SORT_KEY_MAX = "~"

GSI1 = "gsi1_pk-gsi1_sk-index"
GSI2 = "gsi2_pk-gsi2_sk-index"


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so sort keys order lexicographically."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _to_dynamo(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_dynamo(v) for v in value]
    return value


def _from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    return value


def _strip(item: Dict[str, Any]) -> Dict[str, Any]:
    return {k: _from_dynamo(v) for k, v in item.items() if k not in KEY_ATTRIBUTES}


def _device_pk(device_token: str) -> str:
    return f"DEVICE#{device_token}"


def _events_pk(device_token: Optional[str]) -> str:
    return f"EVENTS#{device_token or '_system'}"


def _actor_pk(actor_id: str) -> str:
    return f"ACTOR#{actor_id}"


def _open_flag_pk(subject_type: SubjectType, subject_id: str) -> str:
    return f"OPENFLAG#{subject_type.value}#{subject_id}"


class DynamoDBTrustStore(TrustStore):
    """DynamoDB-backed trust store."""
    
    DEFAULT_REGION = "us-east-1"
    DEFAULT_TTL_DAYS = 90
    RETENTION_TTL_DAYS = {
        Severity.INFO: AuditConstants.RETENTION_DAYS_INFO,
        Severity.WARNING: AuditConstants.RETENTION_DAYS_WARNING,
        Severity.ERROR: AuditConstants.RETENTION_DAYS_ERROR,
        Severity.CRITICAL: AuditConstants.RETENTION_DAYS_CRITICAL,
    }
    
    def __init__(
        self,
        table_name: Optional[str] = None,
        region: Optional[str] = None,
        aws_profile: Optional[str] = None,
        enable_ttl: bool = True,
        ttl_days: int = DEFAULT_TTL_DAYS,
    ):
        self.table_name = table_name or os.environ.get("VEILGUARD_DYNAMODB_TABLE")
        if not self.table_name:
            raise ConfigurationError("VEILGUARD_DYNAMODB_TABLE required")
        
        self.region = region or os.environ.get("AWS_DEFAULT_REGION", self.DEFAULT_REGION)
        self.enable_ttl = enable_ttl
        self.ttl_days = ttl_days
        
        if aws_profile:
            session = boto3.Session(profile_name=aws_profile)
            self.dynamodb = session.resource("dynamodb", region_name=self.region)
        else:
            self.dynamodb = boto3.resource("dynamodb", region_name=self.region)
        
        self.table = self.dynamodb.Table(self.table_name)
        logger.info(f"DynamoDB trust store initialized: {self.table_name} ({self.region})")
    
    # ========== PLUMBING ==========
    
    def _ttl(self, now: datetime, days: Optional[int] = None) -> Optional[int]:
        days = self.ttl_days if days is None else days
        if not self.enable_ttl:
            return None
        return int((now + timedelta(days=days)).timestamp())
    
    def _call(self, operation: str, fn, **kwargs) -> Dict[str, Any]:
        """Run a table call, translating transport failures into TransientError.
        
        Conditional check failures are re-raised untouched for the caller.
        """
        try:
            return fn(**kwargs)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code == CONDITION_FAILED:
                raise
            if code in TRANSIENT_ERROR_CODES:
                logger.error(f"{operation} failed transiently: {code}")
                raise TransientError(f"DynamoDB {operation} failed: {code}", operation=operation)
            logger.error(f"{operation} failed: {e}")
            raise
        except EndpointConnectionError as e:
            logger.error(f"{operation} could not reach DynamoDB: {e}")
            raise TransientError(f"DynamoDB {operation} unreachable", operation=operation)
    
    def _conditional(self, operation: str, fn, **kwargs) -> Optional[Dict[str, Any]]:
        """Like ``_call`` but returns None when the condition did not hold."""
        try:
            return self._call(operation, fn, **kwargs)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == CONDITION_FAILED:
                return None
            raise
    
    def _query_all(self, operation: str, **kwargs) -> Iterator[Dict[str, Any]]:
        while True:
            response = self._call(operation, self.table.query, **kwargs)
            yield from response.get("Items", [])
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return
            kwargs["ExclusiveStartKey"] = last_key
    
    def _delete_items(self, items: List[Dict[str, Any]]) -> int:
        if not items:
            return 0
        with self.table.batch_writer() as batch:
            for item in items:
                batch.delete_item(Key={"pk": item["pk"], "sk": item["sk"]})
        return len(items)
    
    def _query_index_before(self, index: str, pk_name: str, pk_value: str, before: datetime):
        sk_name = pk_name.replace("_pk", "_sk")
        return list(self._query_all(
            f"query {index}",
            IndexName=index,
            KeyConditionExpression=f"{pk_name} = :pk AND {sk_name} < :before",
            ExpressionAttributeValues={":pk": pk_value, ":before": _ts(before)},
        ))
    
    # ========== DEVICES ==========
    
    def upsert_device_on_request(
        self,
        device_token: str,
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> Tuple[Device, Optional[Device]]:
        now_iso = now.isoformat()
        set_parts = [
            "device_token = :token",
            "entity_type = :etype",
            "last_seen_at = :now",
            "first_seen_at = if_not_exists(first_seen_at, :now)",
            "failed_auth_count = if_not_exists(failed_auth_count, :zero)",
            "is_suspicious = if_not_exists(is_suspicious, :false)",
            "is_revoked = if_not_exists(is_revoked, :false)",
            "gsi1_pk = :gsi1_pk",
            "gsi1_sk = if_not_exists(gsi1_sk, :now_ts)",
        ]
        values: Dict[str, Any] = {
            ":token": device_token,
            ":etype": "DEVICE",
            ":now": now_iso,
            ":now_ts": _ts(now),
            ":zero": 0,
            ":one": 1,
            ":false": False,
            ":gsi1_pk": "DEVICES",
        }
        optional = {"ip_address": ip_address, "user_agent": user_agent, "fingerprint": fingerprint}
        for name, value in optional.items():
            if value is not None:
                set_parts.append(f"{name} = :{name}")
                values[f":{name}"] = value
        
        response = self._call(
            "upsert_device",
            self.table.update_item,
            Key={"pk": _device_pk(device_token), "sk": "META"},
            UpdateExpression="SET " + ", ".join(set_parts) + " ADD request_count :one",
            ExpressionAttributeValues=values,
            ReturnValues="ALL_OLD",
        )
        old_item = response.get("Attributes")
        if not old_item:
            device = Device(
                device_token=device_token,
                first_seen_at=now,
                last_seen_at=now,
                request_count=1,
                **{k: v for k, v in optional.items() if v is not None},
            )
            return device, None
        
        previous = Device.model_validate(_strip(old_item))
        update = {"request_count": previous.request_count + 1, "last_seen_at": now}
        update.update({k: v for k, v in optional.items() if v is not None})
        return previous.model_copy(update=update), previous
    
    def get_device(self, device_token: str) -> Optional[Device]:
        response = self._call(
            "get_device",
            self.table.get_item,
            Key={"pk": _device_pk(device_token), "sk": "META"},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return Device.model_validate(_strip(item)) if item else None
    
    def list_devices_first_seen_since(self, since: datetime) -> List[Device]:
        items = self._query_all(
            "list_devices",
            IndexName=GSI1,
            KeyConditionExpression="gsi1_pk = :pk AND gsi1_sk >= :since",
            ExpressionAttributeValues={":pk": "DEVICES", ":since": _ts(since)},
        )
        return [Device.model_validate(_strip(item)) for item in items]
    
    def increment_failed_auth(self, device_token: str, now: datetime) -> Optional[Device]:
        response = self._conditional(
            "increment_failed_auth",
            self.table.update_item,
            Key={"pk": _device_pk(device_token), "sk": "META"},
            UpdateExpression="SET last_failed_auth_at = :now ADD failed_auth_count :one",
            ConditionExpression="attribute_exists(pk)",
            ExpressionAttributeValues={":now": now.isoformat(), ":one": 1},
            ReturnValues="ALL_NEW",
        )
        if response is None:
            return None
        return Device.model_validate(_strip(response["Attributes"]))
    
    def set_suspicious(self, device_token: str, value: bool) -> bool:
        response = self._conditional(
            "set_suspicious",
            self.table.update_item,
            Key={"pk": _device_pk(device_token), "sk": "META"},
            UpdateExpression="SET is_suspicious = :v",
            ConditionExpression="attribute_exists(pk) AND is_suspicious <> :v",
            ExpressionAttributeValues={":v": value},
        )
        return response is not None
    
    def revoke_device(self, device_token: str, reason: str, now: datetime) -> bool:
        response = self._conditional(
            "revoke_device",
            self.table.update_item,
            Key={"pk": _device_pk(device_token), "sk": "META"},
            UpdateExpression="SET is_revoked = :true, revoked_at = :now, revoked_reason = :reason",
            ConditionExpression="attribute_exists(pk) AND is_revoked = :false",
            ExpressionAttributeValues={
                ":true": True, ":false": False,
                ":now": now.isoformat(), ":reason": reason,
            },
        )
        return response is not None
    
    def unban_device(self, device_token: str) -> bool:
        response = self._conditional(
            "unban_device",
            self.table.update_item,
            Key={"pk": _device_pk(device_token), "sk": "META"},
            UpdateExpression="SET is_revoked = :false REMOVE revoked_at, revoked_reason",
            ConditionExpression="is_revoked = :true",
            ExpressionAttributeValues={":true": True, ":false": False},
        )
        return response is not None
    
    def set_active_persona_if_unset(
        self, device_token: str, persona_id: str
    ) -> Optional[str]:
        response = self._conditional(
            "set_active_persona",
            self.table.update_item,
            Key={"pk": _device_pk(device_token), "sk": "META"},
            UpdateExpression="SET active_persona_id = :p",
            ConditionExpression=(
                "attribute_exists(pk) AND "
                "(attribute_not_exists(active_persona_id) OR active_persona_id = :p)"
            ),
            ExpressionAttributeValues={":p": persona_id},
        )
        if response is not None:
            return persona_id
        device = self.get_device(device_token)
        return device.active_persona_id if device else None
    
    def clear_active_persona(self, device_token: str, persona_id: str) -> bool:
        response = self._conditional(
            "clear_active_persona",
            self.table.update_item,
            Key={"pk": _device_pk(device_token), "sk": "META"},
            UpdateExpression="REMOVE active_persona_id",
            ConditionExpression="active_persona_id = :p",
            ExpressionAttributeValues={":p": persona_id},
        )
        return response is not None
    
    def add_persona_link(self, link: PersonaLink) -> None:
        item = {
            "pk": _device_pk(link.device_token),
            "sk": f"PERSONA#{link.persona_id}",
            "entity_type": "PERSONA_LINK",
            "gsi1_pk": f"PERSONA#{link.persona_id}",
            "gsi1_sk": _ts(link.linked_at),
            **link.model_dump(mode="json"),
        }
        self._conditional(
            "add_persona_link",
            self.table.put_item,
            Item=item,
            ConditionExpression="attribute_not_exists(pk)",
        )
    
    def list_persona_links(self, device_token: str) -> List[PersonaLink]:
        items = self._query_all(
            "list_persona_links",
            KeyConditionExpression="pk = :pk AND begins_with(sk, :prefix)",
            ExpressionAttributeValues={":pk": _device_pk(device_token), ":prefix": "PERSONA#"},
        )
        links = [PersonaLink.model_validate(_strip(item)) for item in items]
        return sorted(links, key=lambda l: l.linked_at)
    
    # ========== REQUEST COUNTERS ==========
    
    def increment_request_bucket(self, device_token: str, bucket_start: datetime) -> None:
        values: Dict[str, Any] = {
            ":one": 1,
            ":gsi1_pk": "REQBUCKETS",
            ":gsi1_sk": _ts(bucket_start),
        }
        expression = "SET gsi1_pk = :gsi1_pk, gsi1_sk = :gsi1_sk"
        ttl = self._ttl(bucket_start, AuditConstants.RETENTION_DAYS_REQUEST_BUCKETS)
        if ttl is not None:
            expression += ", ttl_timestamp = :ttl"
            values[":ttl"] = ttl
        self._call(
            "increment_request_bucket",
            self.table.update_item,
            Key={"pk": _device_pk(device_token), "sk": f"REQ#{_ts(bucket_start)}"},
            UpdateExpression=expression + " ADD request_count :one",
            ExpressionAttributeValues=values,
        )
    
    def sum_request_buckets(self, device_token: str, since: datetime) -> int:
        items = self._query_all(
            "sum_request_buckets",
            KeyConditionExpression="pk = :pk AND sk BETWEEN :lo AND :hi",
            ExpressionAttributeValues={
                ":pk": _device_pk(device_token),
                ":lo": f"REQ#{_ts(since)}",
                ":hi": f"REQ#{SORT_KEY_MAX}",
            },
        )
        return sum(int(item.get("request_count", 0)) for item in items)
    
    def purge_request_buckets(self, before: datetime) -> int:
        items = self._query_index_before(GSI1, "gsi1_pk", "REQBUCKETS", before)
        return self._delete_items(items)
    
    # ========== SESSIONS ==========
    
    def _session_item(self, session: Session) -> Dict[str, Any]:
        return {
            "pk": _device_pk(session.device_token),
            "sk": "SESSION",
            "entity_type": "SESSION",
            **session.model_dump(mode="json"),
        }
    
    def get_session(self, device_token: str) -> Optional[Session]:
        response = self._call(
            "get_session",
            self.table.get_item,
            Key={"pk": _device_pk(device_token), "sk": "SESSION"},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return Session.model_validate(_strip(item)) if item else None
    
    def create_session(self, session: Session) -> bool:
        response = self._conditional(
            "create_session",
            self.table.put_item,
            Item=self._session_item(session),
            ConditionExpression="attribute_not_exists(pk)",
        )
        return response is not None
    
    def compare_and_set_session(self, session: Session, expected_version: int) -> bool:
        response = self._conditional(
            "compare_and_set_session",
            self.table.put_item,
            Item=self._session_item(session),
            ConditionExpression="version = :v",
            ExpressionAttributeValues={":v": expected_version},
        )
        return response is not None
    
    # ========== AUDIT EVENTS ==========
    
    def append_audit_event(self, event: AuditEvent) -> None:
        item = {
            "pk": _events_pk(event.device_token),
            "sk": f"EVENT#{_ts(event.created_at)}#{event.event_id}",
            "entity_type": "AUDIT_EVENT",
            "gsi1_pk": f"EVENTSEV#{event.severity.value}",
            "gsi1_sk": _ts(event.created_at),
            **_to_dynamo(event.model_dump(mode="json")),
        }
        retention_days = self.RETENTION_TTL_DAYS[event.severity]
        if retention_days is not None:
            ttl = self._ttl(event.created_at, retention_days)
            if ttl is not None:
                item["ttl_timestamp"] = ttl
        self._call("append_audit_event", self.table.put_item, Item=item)
    
    def list_audit_events(
        self,
        device_token: str,
        since: Optional[datetime] = None,
        event_types: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEvent]:
        lower = f"EVENT#{_ts(since)}" if since else "EVENT#"
        events = []
        for item in self._query_all(
            "list_audit_events",
            KeyConditionExpression="pk = :pk AND sk BETWEEN :lo AND :hi",
            ExpressionAttributeValues={
                ":pk": _events_pk(device_token),
                ":lo": lower,
                ":hi": f"EVENT#{SORT_KEY_MAX}",
            },
            ScanIndexForward=True,
        ):
            if event_types is not None and item.get("event_type") not in event_types:
                continue
            events.append(AuditEvent.model_validate(_strip(item)))
            if limit is not None and len(events) >= limit:
                break
        return events
    
    def purge_audit_events(self, severity: Severity, before: datetime) -> int:
        items = self._query_index_before(GSI1, "gsi1_pk", f"EVENTSEV#{severity.value}", before)
        return self._delete_items(items)
    
    # ========== ANOMALY SCORES ==========
    
    def put_anomaly_score(self, score: AnomalyScore) -> None:
        item = {
            "pk": _device_pk(score.device_token),
            "sk": f"SCORE#{_ts(score.created_at)}#{score.score_id}",
            "entity_type": "ANOMALY_SCORE",
            "gsi1_pk": "SCORES",
            "gsi1_sk": _ts(score.created_at),
            **_to_dynamo(score.model_dump(mode="json")),
        }
        self._call("put_anomaly_score", self.table.put_item, Item=item)
    
    def list_anomaly_scores(self, device_token: str, limit: Optional[int] = None) -> List[AnomalyScore]:
        kwargs: Dict[str, Any] = dict(
            KeyConditionExpression="pk = :pk AND begins_with(sk, :prefix)",
            ExpressionAttributeValues={":pk": _device_pk(device_token), ":prefix": "SCORE#"},
            ScanIndexForward=False,
        )
        if limit is not None:
            kwargs["Limit"] = limit
            response = self._call("list_anomaly_scores", self.table.query, **kwargs)
            items = response.get("Items", [])
        else:
            items = list(self._query_all("list_anomaly_scores", **kwargs))
        return [AnomalyScore.model_validate(_strip(item)) for item in items]
    
    def get_latest_anomaly_score(self, device_token: str) -> Optional[AnomalyScore]:
        scores = self.list_anomaly_scores(device_token, limit=1)
        return scores[0] if scores else None
    
    def purge_anomaly_scores(self, before: datetime) -> int:
        items = self._query_index_before(GSI1, "gsi1_pk", "SCORES", before)
        latest_sk: Dict[str, Optional[str]] = {}
        stale = []
        for item in items:
            token = item["device_token"]
            if token not in latest_sk:
                latest = self.list_anomaly_scores(token, limit=1)
                latest_sk[token] = (
                    f"SCORE#{_ts(latest[0].created_at)}#{latest[0].score_id}" if latest else None
                )
            if item["sk"] != latest_sk[token]:
                stale.append(item)
        return self._delete_items(stale)
    
    # ========== RATE LIMITING ==========
    
    def get_action_ledger(self, actor_id: str, action_type: str) -> ActionLedger:
        response = self._call(
            "get_action_ledger",
            self.table.get_item,
            Key={"pk": _actor_pk(actor_id), "sk": f"LEDGER#{action_type}"},
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return ActionLedger(actor_id=actor_id, action_type=action_type)
        return ActionLedger.model_validate(_strip(item))
    
    def compare_and_set_action_ledger(self, ledger: ActionLedger, expected_version: int) -> bool:
        item = {
            "pk": _actor_pk(ledger.actor_id),
            "sk": f"LEDGER#{ledger.action_type}",
            "entity_type": "ACTION_LEDGER",
            **ledger.model_dump(mode="json"),
        }
        if expected_version == 0:
            condition = {"ConditionExpression": "attribute_not_exists(pk)"}
        else:
            condition = {
                "ConditionExpression": "version = :v",
                "ExpressionAttributeValues": {":v": expected_version},
            }
        response = self._conditional(
            "compare_and_set_action_ledger", self.table.put_item, Item=item, **condition
        )
        return response is not None
    
    def append_action_record(self, record: ActionRecord) -> None:
        item = {
            "pk": _actor_pk(record.actor_id),
            "sk": f"ACTION#{_ts(record.action_timestamp)}#{record.record_id}",
            "entity_type": "ACTION_RECORD",
            "gsi1_pk": f"ACTIONTYPE#{record.action_type}",
            "gsi1_sk": _ts(record.action_timestamp),
            "gsi2_pk": "ACTIONS",
            "gsi2_sk": _ts(record.action_timestamp),
            **record.model_dump(mode="json"),
        }
        ttl = self._ttl(record.action_timestamp, AuditConstants.RETENTION_DAYS_ACTION_RECORDS)
        if ttl is not None:
            item["ttl_timestamp"] = ttl
        self._call("append_action_record", self.table.put_item, Item=item)
    
    def list_action_records(
        self,
        actor_id: str,
        since: datetime,
        action_types: Optional[Sequence[str]] = None,
    ) -> List[ActionRecord]:
        items = self._query_all(
            "list_action_records",
            KeyConditionExpression="pk = :pk AND sk BETWEEN :lo AND :hi",
            ExpressionAttributeValues={
                ":pk": _actor_pk(actor_id),
                ":lo": f"ACTION#{_ts(since)}",
                ":hi": f"ACTION#{SORT_KEY_MAX}",
            },
            ScanIndexForward=True,
        )
        return [
            ActionRecord.model_validate(_strip(item)) for item in items
            if action_types is None or item.get("action_type") in action_types
        ]
    
    def list_actors_with_actions(
        self, since: datetime, action_types: Sequence[str]
    ) -> List[str]:
        actors = set()
        for action_type in action_types:
            for item in self._query_all(
                "list_actors_with_actions",
                IndexName=GSI1,
                KeyConditionExpression="gsi1_pk = :pk AND gsi1_sk >= :since",
                ExpressionAttributeValues={
                    ":pk": f"ACTIONTYPE#{action_type}", ":since": _ts(since),
                },
            ):
                actors.add(item["actor_id"])
        return sorted(actors)
    
    def purge_action_records(self, before: datetime) -> int:
        items = self._query_index_before(GSI2, "gsi2_pk", "ACTIONS", before)
        return self._delete_items(items)
    
    # ========== REVIEW FLAGS ==========
    
    def _flag_item(self, flag: ReviewFlag) -> Dict[str, Any]:
        sort_time = flag.reviewed_at if flag.reviewed_at else flag.flagged_at
        return {
            "pk": f"FLAG#{flag.flag_id}",
            "sk": "META",
            "entity_type": "REVIEW_FLAG",
            "gsi1_pk": f"FLAGSTATUS#{flag.review_status.value}",
            "gsi1_sk": _ts(sort_time),
            **_to_dynamo(flag.model_dump(mode="json")),
        }
    
    def create_flag_if_no_open(self, flag: ReviewFlag) -> Tuple[ReviewFlag, bool]:
        marker = {
            "pk": _open_flag_pk(flag.subject_type, flag.subject_id),
            "sk": "MARKER",
            "entity_type": "OPEN_FLAG_MARKER",
            "flag_id": flag.flag_id,
            "flag": _to_dynamo(flag.model_dump(mode="json")),
        }
        created = self._conditional(
            "create_flag_marker",
            self.table.put_item,
            Item=marker,
            ConditionExpression="attribute_not_exists(pk)",
        )
        if created is None:
            existing = self.get_open_flag(flag.subject_type, flag.subject_id)
            if existing is not None:
                return existing, False
            # Marker was released between the two calls; try once more.
            return self.create_flag_if_no_open(flag)
        self._call("put_flag", self.table.put_item, Item=self._flag_item(flag))
        return flag, True
    
    def get_flag(self, flag_id: str) -> Optional[ReviewFlag]:
        response = self._call(
            "get_flag",
            self.table.get_item,
            Key={"pk": f"FLAG#{flag_id}", "sk": "META"},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return ReviewFlag.model_validate(_strip(item)) if item else None
    
    def get_open_flag(self, subject_type: SubjectType, subject_id: str) -> Optional[ReviewFlag]:
        response = self._call(
            "get_open_flag",
            self.table.get_item,
            Key={"pk": _open_flag_pk(subject_type, subject_id), "sk": "MARKER"},
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return None
        flag = self.get_flag(item["flag_id"])
        if flag is None:
            # Marker written but flag item missing: restore it from the marker copy.
            flag = ReviewFlag.model_validate(_from_dynamo(item["flag"]))
            self._call("put_flag", self.table.put_item, Item=self._flag_item(flag))
        return flag
    
    def close_flag(self, flag: ReviewFlag) -> bool:
        response = self._conditional(
            "close_flag",
            self.table.put_item,
            Item=self._flag_item(flag),
            ConditionExpression="review_status = :open",
            ExpressionAttributeValues={":open": ReviewStatus.PENDING.value},
        )
        if response is None:
            return False
        self._conditional(
            "release_flag_marker",
            self.table.delete_item,
            Key={"pk": _open_flag_pk(flag.subject_type, flag.subject_id), "sk": "MARKER"},
            ConditionExpression="flag_id = :id",
            ExpressionAttributeValues={":id": flag.flag_id},
        )
        return True
    
    def list_flags(
        self, status: ReviewStatus, limit: Optional[int] = None
    ) -> List[ReviewFlag]:
        flags = []
        for item in self._query_all(
            "list_flags",
            IndexName=GSI1,
            KeyConditionExpression="gsi1_pk = :pk",
            ExpressionAttributeValues={":pk": f"FLAGSTATUS#{status.value}"},
            ScanIndexForward=False,
        ):
            flags.append(ReviewFlag.model_validate(_strip(item)))
            if limit is not None and len(flags) >= limit:
                break
        return flags
    
    def count_flags_by_status(self) -> Dict[str, int]:
        stats = {}
        for status in ReviewStatus:
            total = 0
            kwargs: Dict[str, Any] = dict(
                IndexName=GSI1,
                KeyConditionExpression="gsi1_pk = :pk",
                ExpressionAttributeValues={":pk": f"FLAGSTATUS#{status.value}"},
                Select="COUNT",
            )
            while True:
                response = self._call("count_flags", self.table.query, **kwargs)
                total += response.get("Count", 0)
                if not response.get("LastEvaluatedKey"):
                    break
                kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
            stats[status.value] = total
        return stats
    
    def purge_closed_flags(self, before: datetime) -> int:
        removed = 0
        for status in ReviewStatus:
            if status.is_open:
                continue
            items = self._query_index_before(GSI1, "gsi1_pk", f"FLAGSTATUS#{status.value}", before)
            removed += self._delete_items(items)
        return removed
