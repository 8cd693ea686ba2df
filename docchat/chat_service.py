import time
from typing import List, Optional
from abc import ABC, abstractmethod
from openai import AsyncOpenAI
from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential
from .config import get_settings
from .embedding_service import EmbeddingService, embedding_service, is_transient_error
from .models import ChatResponse, ChatSource
from .vector_store import VectorStoreManager, SearchResult, vector_store_manager

settings = get_settings()

NO_ANSWER = "I don't have enough information to answer that question."

PROMPT_TEMPLATE = """Answer the following question based on the provided context. If you cannot find the answer in the context, say "{no_answer}"

Context: {context}

Question: {input}"""


def build_prompt(question: str, results: List[SearchResult]) -> str:
    """Stuff every retrieved chunk into a single prompt"""
    context = "\n\n".join(result.content for result in results)
    return PROMPT_TEMPLATE.format(no_answer=NO_ANSWER, context=context, input=question)


class BaseChatModel(ABC):
    @abstractmethod
    async def complete(self, prompt: str) -> str:
        pass

    @abstractmethod
    def get_model_name(self) -> str:
        pass


class OpenAIChatModel(BaseChatModel):
    """OpenAI chat completions with retry logic"""

    def __init__(self, client: AsyncOpenAI = None, model_name: str = None):
        if client is None and not settings.openai_api_key:
            raise ValueError("OpenAI API key is required")

        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key, max_retries=0)
        self.model_name = model_name or settings.openai_chat_model

    @retry(
        retry=retry_if_exception(is_transient_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=4, max=10),
        reraise=True
    )
    async def complete(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model_name,
            messages=[{"role": "user", "content": prompt}]
        )
        return (response.choices[0].message.content or "").strip()

    def get_model_name(self) -> str:
        return self.model_name


class ChatService:
    """Retrieval-augmented answers over the user's own collection"""

    def __init__(self, embeddings: EmbeddingService = None, vectors: VectorStoreManager = None,
                 chat_model: Optional[BaseChatModel] = None):
        self.embedding_service = embeddings or embedding_service
        self.vector_store = vectors or vector_store_manager
        self._chat_model = chat_model

    @property
    def chat_model(self) -> BaseChatModel:
        if self._chat_model is None:
            self._chat_model = OpenAIChatModel()
            logger.info(f"Chat model initialized: {self._chat_model.get_model_name()}")
        return self._chat_model

    async def answer(self, email: str, message: str) -> ChatResponse:
        start_time = time.time()

        # Users without documents never reach the embedding provider
        if not await self.vector_store.has_collection(email):
            logger.info(f"No vector collection for {email}")
            return ChatResponse(response=NO_ANSWER, sources=[])

        query_vector = await self.embedding_service.encode_query(message)
        results = await self.vector_store.search_similar(email, query_vector, top_k=settings.retrieval_k)

        if not results:
            logger.info(f"No context retrieved for {email}")
            return ChatResponse(response=NO_ANSWER, sources=[])

        answer = await self.chat_model.complete(build_prompt(message, results))

        logger.info(
            f"Answered chat for {email} from {len(results)} chunks "
            f"in {(time.time() - start_time) * 1000:.1f}ms"
        )
        return ChatResponse(
            response=answer or NO_ANSWER,
            sources=[
                ChatSource(
                    document_id=result.document_id,
                    name=result.metadata.get("name"),
                    page_number=result.metadata.get("pageNumber"),
                    score=result.score
                )
                for result in results
            ]
        )


# Global chat service instance
chat_service = ChatService()
