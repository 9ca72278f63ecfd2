"""
Admission-gated OpenAI client wrapper.

Every chat completion first passes the shared budget gate, whose cost
estimates describe exactly these calls.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.admission import AdmissionController


class GatedOpenAI:
    """OpenAI client wrapper that asks for admission before each call.

    Denied calls raise AdmissionDenied and never reach the API.
    """

    def __init__(
        self,
        admission: AdmissionController,
        client_id: str,
        model: str,
        client: Optional[OpenAI] = None,
    ):
        """Initialize gated OpenAI client.

        Args:
            admission: Shared admission controller
            client_id: Identifier of this client instance (required)
            model: OpenAI model name (required)
            client: Preconfigured OpenAI client (created if omitted)

        Raises:
            ValueError: If client_id or model is missing/empty
        """
        if not client_id or not client_id.strip():
            raise ValueError("client_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.admission = admission
        self.client_id = client_id
        self.model = model
        self.client = client or OpenAI()

    def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion if the budget gate admits it.

        Args:
            messages: List of message dictionaries (required)
            temperature: Sampling temperature (optional)
            max_tokens: Maximum tokens to generate (optional)
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged

        Raises:
            ValueError: If messages is empty
            AdmissionDenied: If budget or quota is exhausted
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        self.admission.require_admission(self.client_id, context=messages[-1].get("content"))

        return self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs
        )
