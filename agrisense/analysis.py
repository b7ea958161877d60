import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agrisense import config
from agrisense.errors import ParseError, UpstreamError
from agrisense.schemas import AnalysisResult, FarmContext

logger = logging.getLogger(__name__)

_openai_client: Optional[AsyncOpenAI] = None


def get_openai_client() -> AsyncOpenAI:
    global _openai_client
    if _openai_client is None:
        try:
            _openai_client = AsyncOpenAI()
        except OpenAIError as e:
            raise UpstreamError(f"OpenAI client is not configured (API key missing?): {e}")
    return _openai_client


# --- Prompts ---

ANALYSIS_SYSTEM_PROMPT = (
    "You are an agricultural expert AI that analyzes farm data and provides structured JSON responses. "
    "You MUST respond with valid JSON only - no additional text before or after. "
    "Focus on practical advice and identify critical conditions requiring immediate farmer action. "
    "Always write your analysis in Bengali (Bangla) language using proper Unicode Bengali script "
    "as this is for farmers in Bangladesh who prefer Bengali."
)

CHAT_SYSTEM_PROMPT = (
    "You are AgriSense AI, a helpful agricultural assistant that provides personalized farming advice "
    "based on real-time sensor data, weather conditions, and farmer profiles. Always be friendly, practical, "
    "and use the specific data provided to give actionable recommendations. You MUST always respond in "
    "Bengali (Bangla) language as you are serving farmers in Bangladesh who prefer Bengali communication."
)

ANALYSIS_SCHEMA = {
    "name": "farm_analysis",
    "strict": True,
    "schema": {
        "type": "object",
        "properties": {
            "analysis": {"type": "string"},
            "actionRequired": {"type": "boolean"},
            "message": {"type": ["string", "null"]},
        },
        "required": ["analysis", "actionRequired", "message"],
        "additionalProperties": False,
    },
}


def _value(value: Any) -> Any:
    # 0 is a real reading, only None is unknown
    return "Unknown" if value is None else value


def create_analysis_prompt(context: FarmContext) -> str:
    farmer = context.farmer
    sensors = context.sensors
    weather = context.weather
    nutrients = sensors.nutrients if sensors else None

    return f"""
    Analyze this agricultural data and provide recommendations in STRICT JSON format:

    FARM INFORMATION:
    - Farmer: {farmer.name}
    - Location: {farmer.location}
    - Land Size: {_value(farmer.land_size)} acres
    - Crop Type: {context.crop.type}

    WEATHER DATA:
    - Temperature: {weather.temperature}°C
    - Humidity: {weather.humidity}%
    - Rainfall: {weather.rainfall} mm
    - Forecast: {weather.forecast}

    SENSOR READINGS:
    - Soil Moisture (Critical parameter and most important): {_value(sensors.soil_moisture if sensors else None)}%
    - Soil pH: {_value(sensors.soil_ph if sensors else None)}
    - Soil Temperature: {_value(sensors.soil_temperature if sensors else None)}°C
    - Light Intensity: {_value(sensors.light_intensity if sensors else None)} lux
    - Soil Conductivity: {_value(sensors.soil_conductivity if sensors else None)} µS/cm

    SOIL NUTRIENTS:
    - Nitrogen (N): {_value(nutrients.nitrogen if nutrients else None)} ppm
    - Phosphorus (P): {_value(nutrients.phosphorus if nutrients else None)} ppm
    - Potassium (K): {_value(nutrients.potassium if nutrients else None)} ppm

    RETURN RESPONSE IN THIS EXACT JSON FORMAT:
    {{
      "analysis": "Detailed analysis and recommendations in Bengali (Bangla) for the farmer dashboard, in 4-5 simple points.",
      "actionRequired": true/false,
      "message": "Very short 2-3 sentence instruction in Bangla for SMS if actionRequired is true, null if false"
    }}

    CRITICAL CONDITIONS for actionRequired=true:
    - Soil moisture below 20% (drought stress) - MOST CRITICAL! 0% moisture = SEVERE DROUGHT
    - Soil moisture above 90% (waterlogging risk)
    - pH below 5.5 or above 8.5 (nutrient lockout)
    - Temperature below 10°C or above 40°C (extreme temperature)
    - Any combination that poses immediate crop risk

    IMPORTANT: 0% soil moisture is NOT missing data - it means IMMEDIATE irrigation needed!
    When action is required give the Bangla message in 1-2 sentences, moisture first.
    """


def create_chat_prompt(context: FarmContext, user_message: str, market_prices: List[Dict[str, Any]]) -> str:
    farmer = context.farmer
    weather = context.weather
    sensors = context.sensors

    if sensors:
        sensor_block = f"""
    LIVE SENSOR DATA (Last Updated: {sensors.last_updated}):
    - Soil Moisture: {_value(sensors.soil_moisture)}%
    - Soil pH: {_value(sensors.soil_ph)}
    - Soil Temperature: {_value(sensors.soil_temperature)}°C
    - Light Intensity: {_value(sensors.light_intensity)} lux
    - Soil Conductivity: {_value(sensors.soil_conductivity)} µS/cm
    - Nitrogen (N): {_value(sensors.nutrients.nitrogen)} ppm
    - Phosphorus (P): {_value(sensors.nutrients.phosphorus)} ppm
    - Potassium (K): {_value(sensors.nutrients.potassium)} ppm
    """
    else:
        sensor_block = """
    SENSOR STATUS: No active IoT device connected. Encourage the farmer to connect their AgriSense device.
    """

    if market_prices:
        price_lines = "\n".join(
            f"    - {p['crop']} @ {p['market']}: {p['min_price']}-{p['max_price']} BDT/{p['unit']} ({p['date']})"
            for p in market_prices
        )
    else:
        price_lines = "    - No recent market prices available"

    return f"""
    You are AgriSense AI, helping {farmer.name}.

    FARMER PROFILE:
    - Name: {farmer.name}
    - Location: {farmer.location}
    - Land Size: {_value(farmer.land_size)} acres
    - Crop Type: {context.crop.type}
    - Coordinates: {_value(farmer.coordinates.latitude)}, {_value(farmer.coordinates.longitude)}

    CURRENT WEATHER:
    - Temperature: {weather.temperature}°C
    - Humidity: {weather.humidity}%
    - Rainfall: {weather.rainfall} mm
    - Forecast: {weather.forecast}
    {sensor_block}
    MARKET PRICES:
{price_lines}

    USER'S QUESTION: "{user_message}"

    INSTRUCTIONS:
    1. Address the farmer by name ({farmer.name})
    2. Use the sensor, weather and market data for personalized advice
    3. If sensor readings indicate problems, mention them and provide solutions
    4. Keep responses concise (2-4 sentences) in simple Bengali (Bangla)
    """


# --- External provider responses ---

class ProviderOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    analysis: str
    action_required: bool = Field(alias="actionRequired")
    message: Optional[str] = None
    user_id: Optional[Any] = Field(default=None, alias="userId")


class WrappedProviderResult(BaseModel):
    Output: ProviderOutput


class WrappedProviderResponse(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    result: WrappedProviderResult


def normalize_provider_response(raw: Any) -> ProviderOutput:
    """
    Accepts either ``{analysis, actionRequired, message}`` or
    ``{id, name, result: {Output: {analysis, actionRequired, message}}}``.
    """
    if not isinstance(raw, dict):
        raise UpstreamError("Analysis provider returned a non-object response")

    wrapped = isinstance(raw.get("result"), dict) and "Output" in raw["result"]
    shape = WrappedProviderResponse if wrapped else ProviderOutput
    try:
        parsed = shape.model_validate(raw)
    except ValidationError as e:
        raise UpstreamError(f"Analysis provider response missing required fields (analysis/actionRequired): {e}")

    return parsed.result.Output if wrapped else parsed


async def analyze_with_provider(context: FarmContext, user_id: Any, client: Optional[httpx.AsyncClient] = None) -> AnalysisResult:
    if client is None:
        async with httpx.AsyncClient(timeout=config.PROVIDER_TIMEOUT_SECONDS) as client:
            return await analyze_with_provider(context, user_id, client)

    url = config.SMYTHOS_OUTBOUND_ANALYSIS_URL
    if not url:
        raise UpstreamError("SMYTHOS_OUTBOUND_ANALYSIS_URL is not set")

    headers = {
        "x-ai-provider": "smythos",
        "x-webhook-callback": config.SMYTHOS_ANALYSIS_CALLBACK_URL,
    }
    try:
        response = await client.post(url, json={"farmerData": context.to_payload(), "userId": user_id}, headers=headers)
        response.raise_for_status()
        raw = response.json()
    except httpx.HTTPError as e:
        raise UpstreamError(f"Analysis provider request failed: {e}")
    except ValueError:
        raise UpstreamError("Analysis provider returned invalid JSON")

    output = normalize_provider_response(raw)
    return AnalysisResult(
        analysis=output.analysis,
        action_required=output.action_required,
        message=output.message,
        timestamp=datetime.now(timezone.utc),
        provider="smythos",
        user_id=output.user_id or user_id,
    )


# --- OpenAI ---

def parse_analysis_content(content: Optional[str]) -> Dict[str, Any]:
    try:
        parsed = json.loads(content or "")
    except json.JSONDecodeError as e:
        logger.error("Failed to parse OpenAI JSON response: %s | raw=%r", e, content)
        raise ParseError("OpenAI returned invalid JSON format")

    if not isinstance(parsed, dict) or not parsed.get("analysis") or not isinstance(parsed.get("actionRequired"), bool):
        logger.error("Invalid analysis structure: %r", parsed)
        raise ParseError("OpenAI response missing required fields")
    return parsed


async def analyze_with_openai(context: FarmContext, user_id: Any, client: Optional[AsyncOpenAI] = None) -> AnalysisResult:
    client = client or get_openai_client()
    logger.info("Sending analysis request to OpenAI for %s (%s)", context.farmer.name, user_id)

    started = time.monotonic()
    try:
        completion = await client.chat.completions.create(
            model=config.OPENAI_MODEL,
            messages=[
                {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                {"role": "user", "content": create_analysis_prompt(context)},
            ],
            response_format={"type": "json_schema", "json_schema": ANALYSIS_SCHEMA},
            temperature=0.7,
            max_tokens=1500,
        )
    except OpenAIError as e:
        raise UpstreamError(f"Failed to analyze farm data: {e}")
    duration = f"{time.monotonic() - started:.2f} seconds"

    parsed = parse_analysis_content(completion.choices[0].message.content)
    usage = completion.usage.model_dump() if completion.usage else None
    logger.info(
        "OpenAI analysis done in %s, tokens=%s, actionRequired=%s",
        duration, usage.get("total_tokens") if usage else None, parsed["actionRequired"],
    )

    return AnalysisResult(
        analysis=parsed["analysis"],
        action_required=parsed["actionRequired"],
        message=parsed.get("message"),
        timestamp=datetime.now(timezone.utc),
        usage=usage,
        processing_time=duration,
        provider="openai",
        user_id=user_id,
    )


async def analyze_data(context: FarmContext, user_id: Any) -> AnalysisResult:
    if config.AI_PROVIDER == "smythos":
        return await analyze_with_provider(context, user_id)
    return await analyze_with_openai(context, user_id)


# --- Chat ---

def fallback_chat_response(context: FarmContext) -> str:
    name = context.farmer.name
    if context.sensors:
        return (
            f"আসসালামু আলাইকুম {name}! আমি এখন আপনার প্রশ্নটি প্রক্রিয়া করতে সমস্যা হচ্ছে, "
            f"তবে আপনার বর্তমান মাটির আর্দ্রতা {_value(context.sensors.soil_moisture)}% "
            f"এবং pH {_value(context.sensors.soil_ph)}। আপনার {context.crop.type} খামারে কিভাবে সাহায্য করতে পারি?"
        )
    return (
        f"আসসালামু আলাইকুম {name}! আমি কিছু প্রযুক্তিগত সমস্যার সম্মুখীন হচ্ছি, তবে আপনার "
        f"{context.crop.type} চাষের প্রশ্নে সাহায্য করতে এখানে আছি। অনুগ্রহ করে একটু পরে আবার চেষ্টা করুন।"
    )


async def chat_response(
    context: FarmContext,
    user_message: str,
    market_prices: Optional[List[Dict[str, Any]]] = None,
    client: Optional[AsyncOpenAI] = None,
) -> str:
    try:
        client = client or get_openai_client()
        completion = await client.chat.completions.create(
            model=config.OPENAI_CHAT_MODEL,
            messages=[
                {"role": "system", "content": CHAT_SYSTEM_PROMPT},
                {"role": "user", "content": create_chat_prompt(context, user_message, market_prices or [])},
            ],
            temperature=0.7,
            max_tokens=500,
        )
        answer = completion.choices[0].message.content
        if not answer:
            raise UpstreamError("OpenAI returned an empty chat response")
        return answer
    except (OpenAIError, UpstreamError) as e:
        logger.error("Chatbot OpenAI error: %s", e)
        return fallback_chat_response(context)
