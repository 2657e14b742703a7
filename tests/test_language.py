"""Tests for language detection."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from pipelines.language import LanguageDetectionError, LanguageDetector, LanguageDetectorClient


def detector_client(languages_by_text):
    client = MagicMock(spec=LanguageDetectorClient)

    async def detect(text):
        result = languages_by_text[text]
        if isinstance(result, Exception):
            raise result
        return result

    client.detect_language = AsyncMock(side_effect=detect)
    return client


@pytest.fixture
def texts(crawl_data):
    crawl_data.text('w1', text='Eg er her')
    crawl_data.text('w2', text='Jeg er her')
    crawl_data.text('w3', text='I am here', language='ENG')
    return crawl_data


class TestLanguageDetector:
    """Detection and write-back."""

    @pytest.mark.asyncio
    async def test_detects_missing_languages_only(self, store, texts):
        client = detector_client({
            'Eg er her': [{'code': 'NNO', 'score': 0.9}, {'code': 'NOB', 'score': 0.1}],
            'Jeg er her': [{'code': 'NOB', 'score': 0.8}],
        })

        metrics = await LanguageDetector(store, client, concurrency=2).run()

        assert metrics == {'NNO': 1, 'NOB': 1}
        assert client.detect_language.await_count == 2

    @pytest.mark.asyncio
    async def test_detect_all_revisits_every_text(self, store, texts):
        client = detector_client({
            'Eg er her': [{'code': 'NNO', 'score': 0.9}],
            'Jeg er her': [{'code': 'NOB', 'score': 0.8}],
            'I am here': [{'code': 'ENG', 'score': 0.99}],
        })

        metrics = await LanguageDetector(store, client).run(detect_all=True)

        assert metrics == {'NNO': 1, 'NOB': 1, 'ENG': 1}

    @pytest.mark.asyncio
    async def test_writes_top_ranked_code(self, store, texts):
        client = detector_client({
            'Eg er her': [{'code': 'NNO', 'score': 0.9}],
            'Jeg er her': [{'code': 'NOB', 'score': 0.8}],
        })

        await LanguageDetector(store, client).run()

        remaining = [row async for row in store.iter_extracted_texts(missing_language_only=True)]
        assert remaining == []

    @pytest.mark.asyncio
    async def test_failure_is_isolated_to_one_text(self, store, texts, caplog):
        client = detector_client({
            'Eg er her': RuntimeError("service unavailable"),
            'Jeg er her': [{'code': 'NOB', 'score': 0.8}],
        })

        metrics = await LanguageDetector(store, client).run()

        assert metrics == {'NOB': 1}
        assert "language detection failed for warcId w1" in caplog.text
        remaining = [row['warcId'] async for row in store.iter_extracted_texts(missing_language_only=True)]
        assert remaining == ['w1']


class TestPagination:
    """Keyset paginated text stream."""

    @pytest.mark.asyncio
    async def test_streams_across_pages(self, store, crawl_data):
        for i in range(5):
            crawl_data.text(f'w{i}', text=f'text {i}')

        rows = [row async for row in store.iter_extracted_texts(page_size=2)]

        assert [row['warcId'] for row in rows] == ['w0', 'w1', 'w2', 'w3', 'w4']


class TestLanguageDetectorClient:
    """HTTP client response handling."""

    @pytest.mark.asyncio
    async def test_returns_languages(self):
        response = MagicMock()
        response.raise_for_status = MagicMock()
        response.json = AsyncMock(return_value={'languages': [{'code': 'NNO', 'score': 0.7}]})
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=response)
        context.__aexit__ = AsyncMock(return_value=False)

        client = LanguageDetectorClient('http://detector:8672/')
        client.session = MagicMock()
        client.session.post = MagicMock(return_value=context)

        languages = await client.detect_language('Eg er her')

        assert languages == [{'code': 'NNO', 'score': 0.7}]
        client.session.post.assert_called_once_with('http://detector:8672/detect', json={'text': 'Eg er her'})

    @pytest.mark.asyncio
    async def test_empty_response_is_an_error(self):
        response = MagicMock()
        response.raise_for_status = MagicMock()
        response.json = AsyncMock(return_value={'languages': []})
        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=response)
        context.__aexit__ = AsyncMock(return_value=False)

        client = LanguageDetectorClient('http://detector:8672')
        client.session = MagicMock()
        client.session.post = MagicMock(return_value=context)

        with pytest.raises(LanguageDetectionError):
            await client.detect_language('?')

    @pytest.mark.asyncio
    async def test_unopened_client_refuses_requests(self):
        client = LanguageDetectorClient('http://detector:8672')

        with pytest.raises(RuntimeError):
            await client.detect_language('Eg er her')

        assert client.session is None
