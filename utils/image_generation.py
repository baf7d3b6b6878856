"""
Image generation provider client (Gemini image models over REST)
"""

import os
import logging
import base64
from typing import Dict, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = os.environ.get('GEMINI_API_URL', 'https://generativelanguage.googleapis.com/v1beta')

GENERATION_TYPES = ('coordinate', 'specified_coordinate', 'full_body', 'chibi')

# Public model id -> (provider model, image size)
PROVIDER_MODELS = {
    'gemini-2.5-flash-image': ('gemini-2.5-flash-image', None),
    'gemini-3-pro-image-1k': ('gemini-3-pro-image-preview', '1K'),
    'gemini-3-pro-image-2k': ('gemini-3-pro-image-preview', '2K'),
    'gemini-3-pro-image-4k': ('gemini-3-pro-image-preview', '4K'),
}

GENERATION_TYPE_INSTRUCTIONS = {
    'coordinate': 'Restyle the outfit of the person in the image as described, keeping face and pose.',
    'specified_coordinate': 'Dress the person in exactly the items described, keeping face and pose.',
    'full_body': 'Render a full-body image of the person wearing the described outfit.',
    'chibi': 'Render the person as a cute chibi-style character wearing the described outfit.',
}


class ImageGenerationError(Exception):
    pass


def build_prompt(prompt: str, generation_type: str, background_change: bool) -> str:
    instruction = GENERATION_TYPE_INSTRUCTIONS.get(generation_type, GENERATION_TYPE_INSTRUCTIONS['coordinate'])
    background = (
        'Change the background to suit the outfit.'
        if background_change else
        'Keep the original background.'
    )
    return f"{instruction}\n{background}\n\n{prompt}"


class ImageGenerationClient:
    """Client for the Gemini image generation API"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key
        self.base_url = GEMINI_BASE_URL
        self.timeout = 120

    def _get_headers(self) -> Dict:
        return {
            'Content-Type': 'application/json',
            'x-goog-api-key': self.api_key or '',
        }

    def generate(
        self,
        prompt: str,
        model: str,
        generation_type: str = 'coordinate',
        background_change: bool = False,
        source_image_base64: Optional[str] = None,
        source_image_mime_type: Optional[str] = None,
    ) -> Tuple[bytes, str]:
        """
        Generate one image.

        Returns:
            (image_bytes, mime_type)

        Raises:
            ImageGenerationError on configuration, transport or response errors.
        """
        if not self.api_key:
            raise ImageGenerationError('GEMINI_API_KEY is not configured')

        provider_model, image_size = PROVIDER_MODELS.get(model, PROVIDER_MODELS['gemini-2.5-flash-image'])

        parts = [{'text': build_prompt(prompt, generation_type, background_change)}]
        if source_image_base64:
            parts.append({
                'inline_data': {
                    'mime_type': source_image_mime_type or 'image/png',
                    'data': source_image_base64,
                }
            })

        payload = {
            'contents': [{'parts': parts}],
            'generationConfig': {'responseModalities': ['IMAGE']},
        }
        if image_size:
            payload['generationConfig']['imageConfig'] = {'imageSize': image_size}

        url = f"{self.base_url}/models/{provider_model}:generateContent"
        try:
            response = requests.post(url, headers=self._get_headers(), json=payload, timeout=self.timeout)
        except requests.exceptions.Timeout:
            logger.error('Image generation request timed out')
            raise ImageGenerationError('Request timed out')
        except requests.exceptions.RequestException as e:
            logger.error(f'Image generation request failed: {e}')
            raise ImageGenerationError('Could not reach image provider')

        if response.status_code != 200:
            logger.error(f'Image provider returned {response.status_code}: {response.text[:200]}')
            raise ImageGenerationError(f'Image provider error ({response.status_code})')

        return self._extract_image(response.json())

    @staticmethod
    def _extract_image(data: Dict) -> Tuple[bytes, str]:
        for candidate in data.get('candidates') or []:
            for part in (candidate.get('content') or {}).get('parts') or []:
                inline = part.get('inlineData') or part.get('inline_data')
                if inline and inline.get('data'):
                    mime_type = inline.get('mimeType') or inline.get('mime_type') or 'image/png'
                    return base64.b64decode(inline['data']), mime_type
        raise ImageGenerationError('No image in provider response')
