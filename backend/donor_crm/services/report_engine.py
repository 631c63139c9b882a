import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import pandas as pd
from pydantic import BaseModel

from donor_crm import config
from donor_crm.models.donation import Donation
from donor_crm.models.organization import Organization
from donor_crm.models.report import ReportComponent, ReportDefinition, ReportFilters
from donor_crm.services.access import Caller, scope_query, to_object_id

logger = logging.getLogger(__name__)

METRICS = ["sumAmount", "count"]

SELECTED_FIELDS_PREVIEW_TITLE = "Selected Fields (preview)"
SELECTED_FIELDS_TITLE = "Selected Fields"


class ReportDomain(str, Enum):
    DONATION = "donation"
    DONOR = "donor"
    CAMPAIGN = "campaign"
    FINANCIAL = "financial"


class GroupBy(str, Enum):
    MONTH = "month"
    CAMPAIGN = "campaign"
    ORGANIZATION = "organization"
    PAYMENT_METHOD = "paymentMethod"
    CITY = "city"
    DONOR_TYPE = "donorType"
    NONE = "none"


DONOR_LOOKUP_STAGES = (
    {"$lookup": {"from": "contacts", "localField": "donor", "foreignField": "_id", "as": "donor_doc"}},
    {"$unwind": {"path": "$donor_doc", "preserveNullAndEmptyArrays": True}},
)


@dataclass(frozen=True)
class GroupingStrategy:
    key: Any  # $group _id expression
    stages: Tuple[Dict[str, Any], ...] = ()  # stages that must run before the $group


GROUPING_STRATEGIES: Dict[GroupBy, GroupingStrategy] = {
    GroupBy.MONTH: GroupingStrategy({"year": {"$year": "$donation_date"}, "month": {"$month": "$donation_date"}}),
    GroupBy.CAMPAIGN: GroupingStrategy("$campaign"),
    GroupBy.ORGANIZATION: GroupingStrategy("$organization"),
    GroupBy.PAYMENT_METHOD: GroupingStrategy("$payment_method"),
    GroupBy.CITY: GroupingStrategy("$donor_doc.address.city", DONOR_LOOKUP_STAGES),
    GroupBy.DONOR_TYPE: GroupingStrategy("$donor_doc.donor_type", DONOR_LOOKUP_STAGES),
    GroupBy.NONE: GroupingStrategy(None),
}


@dataclass(frozen=True)
class DomainGrouping:
    allowed: Tuple[GroupBy, ...]
    default: GroupBy  # when the component names no groupBy
    fallback: GroupBy  # when it names one this domain cannot use


DONATION_GROUPINGS = (GroupBy.MONTH, GroupBy.CAMPAIGN, GroupBy.ORGANIZATION, GroupBy.PAYMENT_METHOD, GroupBy.NONE)

DOMAIN_GROUPINGS: Dict[ReportDomain, DomainGrouping] = {
    ReportDomain.DONATION: DomainGrouping(DONATION_GROUPINGS, GroupBy.NONE, GroupBy.NONE),
    ReportDomain.FINANCIAL: DomainGrouping(DONATION_GROUPINGS, GroupBy.PAYMENT_METHOD, GroupBy.PAYMENT_METHOD),
    ReportDomain.DONOR: DomainGrouping((GroupBy.CITY, GroupBy.DONOR_TYPE), GroupBy.CITY, GroupBy.CITY),
    ReportDomain.CAMPAIGN: DomainGrouping((GroupBy.CAMPAIGN,), GroupBy.CAMPAIGN, GroupBy.CAMPAIGN),
}


class ComponentResult(BaseModel):
    title: str = ""
    kind: str = "table"
    rows: List[Dict[str, Any]] = []
    headers: Optional[List[str]] = None


def resolve_domain(report_type: Optional[str], query_key: Optional[str]) -> ReportDomain:
    key = (query_key or "").lower()
    if report_type == "donation" or key.startswith("donation"):
        return ReportDomain.DONATION
    if report_type == "donor" or "donor" in key:
        return ReportDomain.DONOR
    if report_type == "campaign" or "campaign" in key:
        return ReportDomain.CAMPAIGN
    if report_type == "financial" or "financial" in key:
        return ReportDomain.FINANCIAL
    return ReportDomain.DONATION


def resolve_group_by(domain: ReportDomain, group_by: Optional[str]) -> GroupBy:
    grouping = DOMAIN_GROUPINGS[domain]
    if not group_by:
        return grouping.default
    try:
        candidate = GroupBy(group_by)
    except ValueError:
        return grouping.fallback
    return candidate if candidate in grouping.allowed else grouping.fallback


def resolve_metrics(metrics: Optional[List[str]]) -> List[str]:
    selected = [metric for metric in METRICS if metric in (metrics or [])]
    return selected or list(METRICS)


def parse_filter_date(value: Any) -> Optional[datetime]:
    """Lenient date parsing for report filters; anything unparseable is treated as absent."""
    if not value:
        return None
    try:
        parsed = pd.to_datetime(value, errors="coerce", utc=True)
    except (TypeError, ValueError, OverflowError):
        return None
    if pd.isna(parsed):
        return None
    return parsed.tz_convert(None).to_pydatetime()


def build_donation_match(filters: Optional[ReportFilters], caller: Caller) -> Dict[str, Any]:
    filters = filters or ReportFilters()
    match: Dict[str, Any] = {}

    organization_id = to_object_id(filters.organization) if caller.is_privileged else None
    if organization_id is not None:
        match["organization"] = organization_id
    campaign_id = to_object_id(filters.campaign_id)
    if campaign_id is not None:
        match["campaign"] = campaign_id
    if filters.payment_method:
        match["payment_method"] = filters.payment_method
    if filters.type:
        match["type"] = filters.type

    date_range = {}
    date_from = parse_filter_date(filters.date_from)
    if date_from:
        date_range["$gte"] = date_from
    date_to = parse_filter_date(filters.date_to)
    if date_to:
        date_range["$lte"] = date_to
    if date_range:
        match["donation_date"] = date_range

    match["status"] = "completed"
    return scope_query(caller, match)


def _month_label(value: Any) -> str:
    if isinstance(value, dict):
        return f"{int(value['year']):04d}-{int(value['month']):02d}"
    return str(value)


def _donor_name(doc: Dict[str, Any]) -> str:
    donor = doc.get("donor_doc") or {}
    full_name = " ".join(part for part in [donor.get("first_name"), donor.get("last_name")] if part)
    return full_name or donor.get("name") or ""


def _donation_date(doc: Dict[str, Any]) -> str:
    value = doc.get("donation_date")
    return value.strftime("%Y-%m-%d") if isinstance(value, datetime) else ""


FIELD_CATALOG: Dict[str, Callable[[Dict[str, Any]], Any]] = {
    "Donor Name": _donor_name,
    "Donation Amount": lambda d: d.get("amount") or 0,
    "Donation Date": _donation_date,
    "Organization": lambda d: (d.get("org_doc") or {}).get("name") or "",
    "Campaign": lambda d: (d.get("camp_doc") or {}).get("name") or "",
    "Payment Method": lambda d: d.get("payment_method") or "",
    "80G Status": lambda d: d.get("eighty_g_status") or d.get("receipt_status") or "",
    "City": lambda d: ((d.get("donor_doc") or {}).get("address") or {}).get("city") or "",
    "Donor Type": lambda d: (d.get("donor_doc") or {}).get("donor_type") or "",
}


class ReportEngine:
    """
    Turns report definitions into grouped donation aggregates, scoped to the caller's organization.
    Read-only: nothing is persisted.
    """

    def __init__(self, caller: Caller):
        self.caller = caller

    async def _aggregate(self, pipeline: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        logger.debug(f"[REPORT] Pipeline: {pipeline}")
        return await Donation.aggregate(pipeline).to_list()

    def _grouping_pipeline(self, match: Dict[str, Any], group_by: GroupBy) -> List[Dict[str, Any]]:
        strategy = GROUPING_STRATEGIES[group_by]
        return [{"$match": match}, *strategy.stages]

    @staticmethod
    def _sort_stage(component: ReportComponent) -> List[Dict[str, Any]]:
        return [{"$sort": dict(component.sort)}] if component.sort else []

    async def run_component(self, component: ReportComponent, definition: ReportDefinition) -> ComponentResult:
        domain = resolve_domain(definition.type, component.query_key)
        group_by = resolve_group_by(domain, component.group_by)
        match = build_donation_match(definition.filters, self.caller)
        logger.info(
            f"[REPORT] Component '{component.title}' → domain {domain.value}, group by {group_by.value}"
        )

        if domain == ReportDomain.DONOR:
            rows = await self._run_donor(component, match, group_by)
        elif domain == ReportDomain.CAMPAIGN:
            rows = await self._run_campaign(component, match)
        else:
            rows = await self._run_donation(component, match, group_by)
        return ComponentResult(title=component.title, kind=component.kind or "table", rows=rows)

    async def _run_donation(self, component: ReportComponent, match: Dict[str, Any], group_by: GroupBy) -> List[Dict[str, Any]]:
        metrics = resolve_metrics(component.metrics)
        group_stage: Dict[str, Any] = {"_id": GROUPING_STRATEGIES[group_by].key}
        if "sumAmount" in metrics:
            group_stage["sumAmount"] = {"$sum": "$amount"}
        if "count" in metrics:
            group_stage["count"] = {"$sum": 1}

        pipeline = self._grouping_pipeline(match, group_by)
        pipeline.append({"$group": group_stage})
        pipeline.extend(self._sort_stage(component))
        raw_rows = await self._aggregate(pipeline)

        organization_names: Dict[str, str] = {}
        if group_by == GroupBy.ORGANIZATION:
            organization_names = await self._organization_names([row["_id"] for row in raw_rows if row.get("_id")])

        rows = []
        for raw in raw_rows:
            group_id = raw.get("_id")
            if group_by == GroupBy.NONE or group_id is None:
                key = "All"
            elif group_by == GroupBy.ORGANIZATION:
                key = organization_names.get(str(group_id), str(group_id))
            elif group_by == GroupBy.MONTH:
                key = _month_label(group_id)
            else:
                key = str(group_id)
            row = {"key": key}
            row.update({metric: raw.get(metric, 0) for metric in metrics})
            rows.append(row)
        return rows

    async def _run_donor(self, component: ReportComponent, match: Dict[str, Any], group_by: GroupBy) -> List[Dict[str, Any]]:
        pipeline = self._grouping_pipeline(match, group_by)
        pipeline.append({
            "$group": {
                "_id": GROUPING_STRATEGIES[group_by].key,
                "donors": {"$addToSet": "$donor"},
                "sumAmount": {"$sum": "$amount"},
            }
        })
        pipeline.append({"$project": {"_id": 1, "sumAmount": 1, "donorCount": {"$size": "$donors"}}})
        pipeline.extend(self._sort_stage(component))
        raw_rows = await self._aggregate(pipeline)
        return [
            {
                "key": raw.get("_id") or "Unknown",
                "donorCount": raw.get("donorCount") or 0,
                "sumAmount": raw.get("sumAmount") or 0,
            }
            for raw in raw_rows
        ]

    async def _run_campaign(self, component: ReportComponent, match: Dict[str, Any]) -> List[Dict[str, Any]]:
        pipeline = self._grouping_pipeline(match, GroupBy.CAMPAIGN)
        pipeline.append({
            "$group": {
                "_id": GROUPING_STRATEGIES[GroupBy.CAMPAIGN].key,
                "sumAmount": {"$sum": "$amount"},
                "count": {"$sum": 1},
            }
        })
        pipeline.append({"$lookup": {"from": "campaigns", "localField": "_id", "foreignField": "_id", "as": "camp"}})
        pipeline.append({"$unwind": {"path": "$camp", "preserveNullAndEmptyArrays": True}})
        pipeline.append({"$project": {"_id": 1, "sumAmount": 1, "count": 1, "campaignName": "$camp.name"}})
        pipeline.extend(self._sort_stage(component))
        raw_rows = await self._aggregate(pipeline)

        rows = []
        for raw in raw_rows:
            group_id = raw.get("_id")
            campaign_name = raw.get("campaignName")
            if campaign_name:
                key = campaign_name
            elif group_id is not None:
                key = str(group_id)
            else:
                key = "Unknown"
            rows.append({
                "key": key,
                "sumAmount": raw.get("sumAmount") or 0,
                "count": raw.get("count") or 0,
                "campaignName": campaign_name,
            })
        return rows

    async def _organization_names(self, organization_ids: List[Any]) -> Dict[str, str]:
        if not organization_ids:
            return {}
        organizations = await Organization.find({"_id": {"$in": organization_ids}}).to_list()
        return {str(organization.id): organization.name for organization in organizations}

    async def selected_fields(self, definition: ReportDefinition) -> Tuple[List[str], List[Dict[str, Any]]]:
        """Detail rows for the report's selected fields, one per donation (capped at REPORT_DETAIL_ROW_LIMIT)."""
        if not definition.fields:
            return [], []
        headers = [field for field in definition.fields if field in FIELD_CATALOG]

        pipeline = [
            {"$match": build_donation_match(definition.filters, self.caller)},
            *DONOR_LOOKUP_STAGES,
            {"$lookup": {"from": "organizations", "localField": "organization", "foreignField": "_id", "as": "org_doc"}},
            {"$unwind": {"path": "$org_doc", "preserveNullAndEmptyArrays": True}},
            {"$lookup": {"from": "campaigns", "localField": "campaign", "foreignField": "_id", "as": "camp_doc"}},
            {"$unwind": {"path": "$camp_doc", "preserveNullAndEmptyArrays": True}},
            {"$limit": config.REPORT_DETAIL_ROW_LIMIT},
        ]
        docs = await self._aggregate(pipeline)
        rows = [{header: FIELD_CATALOG[header](doc) for header in headers} for doc in docs]
        return headers, rows

    async def run_components(self, definition: ReportDefinition) -> List[ComponentResult]:
        results = []
        for component in definition.components or []:
            results.append(await self.run_component(component, definition))
        return results

    async def run_report(self, definition: ReportDefinition) -> List[ComponentResult]:
        """Component results followed by a capped preview of the selected fields, for interactive use."""
        logger.info(f"=== REPORT RUN STARTED === type: {definition.type}, components: {len(definition.components)}")
        results = await self.run_components(definition)
        if definition.fields:
            headers, rows = await self.selected_fields(definition)
            results.append(ComponentResult(
                title=SELECTED_FIELDS_PREVIEW_TITLE,
                kind="table",
                headers=headers,
                rows=rows[:config.REPORT_PREVIEW_ROW_LIMIT],
            ))
        logger.info(f"=== REPORT RUN COMPLETED === {len(results)} result tables")
        return results

    async def build_export_tables(self, definition: ReportDefinition) -> List[ComponentResult]:
        """Same as run_report, but the selected fields table is not cut down to the preview size."""
        results = await self.run_components(definition)
        if definition.fields:
            headers, rows = await self.selected_fields(definition)
            results.append(ComponentResult(title=SELECTED_FIELDS_TITLE, kind="table", headers=headers, rows=rows))
        return results
