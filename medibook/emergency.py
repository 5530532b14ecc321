"""
Emergency Module
================
Ranks the known emergency rooms by distance from the patient and
estimates the driving time to each one. Also carries the static guidance
shown while the patient waits for help.

With Azure Maps credentials:
  - Route Directions gives a traffic-aware ETA per emergency room

Without Azure Maps credentials (demo mode):
  - Haversine distance at an average 40 km/h
"""

from __future__ import annotations

import logging
import math
import os
from typing import Optional

import requests
from dotenv import load_dotenv

from medibook import directory

load_dotenv()
logger = logging.getLogger(__name__)

AVERAGE_SPEED_KMH = 40
ICE_CONTACT = "911"

WAITING_INSTRUCTIONS: list[str] = [
    "If it's safe, stay where you are.",
    "Try to remain calm and breathe slowly.",
    "If you are bleeding, apply firm pressure to the wound with a clean cloth.",
    "Keep your phone line open for responders to call back.",
    "Gather any personal identification or medical information if easily accessible.",
]

ROUTE_URL = "https://atlas.microsoft.com/route/directions/json"


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two GPS points in kilometres."""
    if lat1 == lat2 and lon1 == lon2:
        return 0.0
    R = 6371  # Earth radius in km
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


def estimate_eta_minutes(distance_km: float) -> int:
    return round(distance_km / AVERAGE_SPEED_KMH * 60)


def share_location_message(lat: float, lng: float) -> str:
    url = f"https://www.google.com/maps?q={lat},{lng}"
    return f"I'm having an emergency. My current location is: {url}"


class EmergencyLocator:
    """Finds the nearest emergency rooms for a patient location.

    Attributes:
        subscription_key: Azure Maps subscription key.
    """

    def __init__(self, subscription_key: Optional[str] = None) -> None:
        self.subscription_key: str = (
            subscription_key
            if subscription_key is not None
            else os.getenv("MAPS_SUBSCRIPTION_KEY", "")
        )
        self._initialized = bool(
            self.subscription_key and self.subscription_key != "your-key"
        )

        if not self._initialized:
            logger.warning(
                "Azure Maps credentials not configured. "
                "Using haversine distance for ETA estimation."
            )
        else:
            logger.info("Azure Maps initialized.")

    @property
    def is_configured(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def find_nearest(
        self, lat: Optional[float] = None, lng: Optional[float] = None
    ) -> list[dict]:
        """Rank emergency rooms by distance from the patient.

        Args:
            lat: Patient latitude, or ``None`` when location is unknown.
            lng: Patient longitude, or ``None`` when location is unknown.

        Returns:
            Emergency room dicts. Without coordinates they come back in
            catalogue order with their stored ETA and no distance. With
            coordinates they are sorted nearest-first and carry
            ``distance_km``, a recomputed ``eta_driving_minutes`` and
            ``eta_source`` ("azure_maps" or "estimated").
        """
        rooms = directory.get_emergency_rooms()
        if lat is None or lng is None:
            return [
                {**er.model_dump(), "distance_km": None, "eta_source": "static"}
                for er in rooms
            ]

        ranked: list[dict] = []
        for er in rooms:
            distance = haversine_distance(lat, lng, er.location.lat, er.location.lng)
            eta, source = self._eta(lat, lng, er.location.lat, er.location.lng, distance)
            ranked.append(
                {
                    **er.model_dump(),
                    "distance_km": round(distance, 2),
                    "eta_driving_minutes": eta,
                    "eta_source": source,
                    "_distance": distance,
                }
            )

        ranked.sort(key=lambda r: r["_distance"])
        for r in ranked:
            del r["_distance"]

        logger.info(
            "Ranked %d emergency rooms for (%.4f, %.4f); nearest: %s.",
            len(ranked), lat, lng, ranked[0]["name"] if ranked else "N/A",
        )
        return ranked

    # ------------------------------------------------------------------
    # ETA
    # ------------------------------------------------------------------

    def _eta(
        self,
        lat: float,
        lng: float,
        er_lat: float,
        er_lng: float,
        distance_km: float,
    ) -> tuple[int, str]:
        if self._initialized:
            minutes = self._azure_maps_eta(lat, lng, er_lat, er_lng)
            if minutes is not None:
                return minutes, "azure_maps"
        return estimate_eta_minutes(distance_km), "estimated"

    def _azure_maps_eta(
        self, lat: float, lng: float, er_lat: float, er_lng: float
    ) -> Optional[int]:
        """Traffic-aware driving time from Azure Maps Route Directions.

        Returns:
            Minutes, or ``None`` when the route could not be computed.
        """
        try:
            params = {
                "subscription-key": self.subscription_key,
                "api-version": "1.0",
                "query": f"{lat},{lng}:{er_lat},{er_lng}",
                "traffic": "true",
                "departAt": "now",
                "travelMode": "car",
            }
            response = requests.get(ROUTE_URL, params=params, timeout=10)
            response.raise_for_status()
            routes = response.json().get("routes", [])
            if not routes:
                logger.warning("No routes returned from Azure Maps.")
                return None
            seconds = routes[0].get("summary", {}).get("travelTimeInSeconds", 0)
            return max(1, round(seconds / 60))
        except Exception as exc:
            logger.error("Azure Maps route error: %s", exc)
            return None

    # ------------------------------------------------------------------
    # Waiting guidance
    # ------------------------------------------------------------------

    def emergency_info(
        self, lat: Optional[float] = None, lng: Optional[float] = None
    ) -> dict:
        """Instructions, ICE contact and a shareable location message."""
        return {
            "instructions": list(WAITING_INSTRUCTIONS),
            "ice_contact": ICE_CONTACT,
            "share_message": (
                share_location_message(lat, lng)
                if lat is not None and lng is not None
                else None
            ),
        }
