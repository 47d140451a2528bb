import asyncio
import json
import logging
import os
import queue
import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from chatstream.exceptions import EmitFailed
from chatstream.services.openai_client import OpenAIClient
from chatstream.services.prompts import PROMPTS
from chatstream.services.session_store import SessionStore
from chatstream.types import ChatStreamBody, Segment, SegmenterConfig
from chatstream.utils.logger import build_preview, get_content_log_config, log_json, setup_logger
from chatstream.utils.scheduler import AsyncioScheduler, PolledScheduler
from chatstream.utils.segmenter import StreamSegmenter


load_dotenv()  # 加载 .env，确保 OPENAI_API_KEY、SEGMENT_* 等可用
logger = setup_logger()
app = FastAPI(title="Chat Stream Segmenter Service")

allowed_origins = os.environ.get("ALLOWED_ORIGINS", "*").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

session_store = SessionStore()
client = OpenAIClient()

ENVELOPE_TYPE = "chat-response"
# 上游事件流结束标记
_STREAM_END = object()


def build_messages(system_text: Optional[str], history: List[dict], user_input: str) -> List[dict]:
    """
    构建上游请求的消息数组：system（若有）+ 历史 + 当前 user 消息。
    """
    messages: List[dict] = []
    if system_text:
        messages.append({"role": "system", "content": [{"type": "text", "text": system_text}]})
    messages.extend(history)
    messages.append({"role": "user", "content": [{"type": "text", "text": user_input}]})
    return messages


def to_sse(event: str, data: Dict[str, Any]) -> str:
    """
    将事件与数据编码为 SSE 文本块（event 行 + data 行 + 空行）。
    """
    return f"event: {event}\n" + f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def to_envelope(segment: Segment) -> Dict[str, Any]:
    """WebSocket 下发的分段消息信封。"""
    return {
        "type": ENVELOPE_TYPE,
        "data": {"type": "message", "content": segment.content, "isPartial": segment.isPartial},
    }


def event_delta(event) -> Optional[str]:
    """从上游事件中提取文本增量，非增量事件返回 None。"""
    etype = getattr(event, "type", None) or ""
    if etype not in ("content.delta", "response.output_text.delta"):
        return None
    data = getattr(event, "data", None)
    if isinstance(data, dict):
        return data.get("delta") or data.get("text")
    return getattr(event, "delta", None)


def prepare_request(body: ChatStreamBody) -> Tuple[str, Optional[str], List[dict], SegmenterConfig]:
    """
    解析请求体：生成 requestId、整理历史与消息、合成本次的分段配置。

    关键逻辑：
        - body.messages 优先，否则从 session_store 读取历史；
        - system 覆盖 systemPromptName，二者均无时使用 default 模板；
        - 分段配置 = SEGMENT_* 环境变量 + 请求体覆盖项。
    """
    request_id = str(uuid.uuid4())
    session_id = body.sessionId
    system_text = body.system or PROMPTS.get(body.systemPromptName or "default")
    if body.messages:
        session_store.set(session_id or request_id, body.messages)
        history = body.messages
    else:
        history = session_store.get(session_id or request_id)
    messages = build_messages(system_text, history, body.input)
    config = SegmenterConfig.from_env(**body.segmenter_overrides())

    content_cfg = get_content_log_config()
    log_json(logger, logging.INFO, "request.start", requestId=request_id, sessionId=session_id, messages=len(messages))
    if content_cfg["include_input"]:
        pv = build_preview(body.input, content_cfg["max_chars"], content_cfg["redact"])
        log_json(logger, logging.INFO, "request.input.preview", requestId=request_id, **pv)
    return request_id, session_id, messages, config


def log_segment(request_id: str, segment: Segment) -> None:
    content_cfg = get_content_log_config()
    log_json(logger, logging.DEBUG, "stream.segment", requestId=request_id, len=len(segment.content), isPartial=segment.isPartial)
    if content_cfg["include_output"] in ("segment", "both"):
        pv = build_preview(segment.content, content_cfg["max_chars"], content_cfg["redact"])
        log_json(logger, logging.DEBUG, "stream.segment.preview", requestId=request_id, **pv)


def finish_reply(request_id: str, session_id: Optional[str], user_input: str, reply_text: str) -> None:
    """记录最终输出预览并写入会话历史。"""
    content_cfg = get_content_log_config()
    if content_cfg["include_output"] in ("final", "both") and reply_text:
        pv = build_preview(reply_text, content_cfg["max_chars"], content_cfg["redact"])
        log_json(logger, logging.INFO, "stream.output.final.preview", requestId=request_id, **pv)
    session_store.append_turn(session_id or request_id, user_input, reply_text)
    log_json(logger, logging.INFO, "request.end", requestId=request_id, sessionId=session_id, replyLen=len(reply_text))


def emit_failure_logger(request_id: str):
    def _log(err: EmitFailed) -> None:
        log_json(logger, logging.ERROR, "stream.segment.lost", requestId=request_id, error=str(err.__cause__ or err))

    return _log


def read_upstream(stream, events: queue.Queue, stop: threading.Event) -> None:
    """
    后台线程：逐个读取上游事件放入队列。

    关键逻辑：
        - 正常结束放入 _STREAM_END，出错时放入异常对象，由消费方重新抛出；
        - stop 被设置（客户端断开）后不再继续读取上游。
    """
    try:
        for event in stream:
            if stop.is_set():
                return
            events.put(event)
    except Exception as e:
        events.put(e)
        return
    events.put(_STREAM_END)


def segment_generator(body: ChatStreamBody) -> Iterable[bytes]:
    """
    SSE 生成器：上游文本增量经 StreamSegmenter 合并后以 content.segment 事件输出。

    输出事件：
        response.created -> content.segment* -> response.usage -> response.completed
        出错时：content.segment*（已缓冲内容）-> response.error

    关键逻辑：
        - 同步生成器中没有事件循环，使用 PolledScheduler；
        - 上游由后台线程读取，这里按最近一个定时器的到期时间作为队列等待超时，
          上游停顿时延迟发送与 maxWaitMs 发送仍按时触发；
        - 流结束、出错或客户端断开时都会 destroy() 分段器；
        - 单个分段发送失败只记录日志，不中断后续流。
    """
    request_id, session_id, messages, config = prepare_request(body)
    scheduler = PolledScheduler()
    on_error = emit_failure_logger(request_id)
    outbox: List[Segment] = []
    segmenter = StreamSegmenter(sink=outbox.append, config=config, scheduler=scheduler, on_error=on_error, name=request_id)
    reply_parts: List[str] = []
    usage: Dict[str, Any] = {}
    stop = threading.Event()

    def drain() -> Iterable[bytes]:
        while outbox:
            segment = outbox.pop(0)
            log_segment(request_id, segment)
            yield to_sse("content.segment", segment.model_dump()).encode("utf-8")

    def close_segmenter() -> None:
        try:
            segmenter.destroy()
        except EmitFailed as e:
            on_error(e)

    yield to_sse("response.created", {"requestId": request_id, "sessionId": session_id}).encode("utf-8")
    try:
        stream = client.stream_response(messages, body.temperature or 0.7, body.model)
        events: queue.Queue = queue.Queue()
        reader = threading.Thread(target=read_upstream, args=(stream, events, stop), name=f"upstream-{request_id}", daemon=True)
        reader.start()
        while True:
            try:
                event = events.get(timeout=scheduler.seconds_until_due())
            except queue.Empty:
                scheduler.run_due()
                yield from drain()
                continue
            if event is _STREAM_END:
                break
            if isinstance(event, Exception):
                raise event
            delta = event_delta(event)
            if delta:
                reply_parts.append(delta)
                try:
                    segmenter.ingest(delta)
                except EmitFailed as e:
                    on_error(e)
            elif getattr(event, "type", None) == "response.usage" and isinstance(event.data, dict):
                usage = event.data
            scheduler.run_due()
            yield from drain()
        close_segmenter()
        yield from drain()
        if usage:
            log_json(logger, logging.INFO, "sse.response.usage", requestId=request_id, **usage)
            yield to_sse("response.usage", usage).encode("utf-8")
        finish_reply(request_id, session_id, body.input, "".join(reply_parts).strip())
        yield to_sse("response.completed", {"requestId": request_id}).encode("utf-8")
    except Exception as e:
        log_json(logger, logging.ERROR, "sse.response.error", requestId=request_id, error=str(e))
        close_segmenter()
        yield from drain()
        yield to_sse("response.error", {"message": str(e)}).encode("utf-8")
    finally:
        stop.set()
        if not segmenter.closed:
            # 客户端提前断开：剩余内容无法下发，只做收尾
            log_json(logger, logging.INFO, "sse.client.closed", requestId=request_id, pending=len(segmenter.buffer))
            close_segmenter()


async def relay_reply(body: ChatStreamBody, outbox: asyncio.Queue, sender: Optional[asyncio.Task] = None) -> None:
    """
    WebSocket 单次回复：每个回复流使用独立的 StreamSegmenter（asyncio 定时器）。

    输入：
        body: 请求体
        outbox: 待下发信封队列
        sender: 负责下发的任务；它结束（连接已断开）时停止读取上游

    关键逻辑：
        - 上游的阻塞读取放到线程池执行，事件循环保持空闲，定时器可按时触发；
        - 结束（正常、异常或连接断开）时 destroy() 分段器，正常结束下发 complete，异常下发 error。
    """
    request_id, session_id, messages, config = prepare_request(body)
    on_error = emit_failure_logger(request_id)
    loop = asyncio.get_running_loop()

    def sink(segment: Segment) -> None:
        log_segment(request_id, segment)
        outbox.put_nowait(to_envelope(segment))

    segmenter = StreamSegmenter(sink=sink, config=config, scheduler=AsyncioScheduler(loop), on_error=on_error, name=request_id)
    reply_parts: List[str] = []
    failure: Optional[Exception] = None
    aborted = False
    try:
        stream = await loop.run_in_executor(None, client.stream_response, messages, body.temperature or 0.7, body.model)
        events = iter(stream)
        while True:
            if sender is not None and sender.done():
                aborted = True
                log_json(logger, logging.INFO, "ws.relay.aborted", requestId=request_id, replyLen=len("".join(reply_parts)))
                close = getattr(events, "close", None)
                if close is not None:
                    close()
                break
            event = await loop.run_in_executor(None, next, events, _STREAM_END)
            if event is _STREAM_END:
                break
            delta = event_delta(event)
            if delta:
                reply_parts.append(delta)
                try:
                    segmenter.ingest(delta)
                except EmitFailed as e:
                    on_error(e)
    except Exception as e:
        log_json(logger, logging.ERROR, "ws.response.error", requestId=request_id, error=str(e))
        failure = e
    finally:
        try:
            segmenter.destroy()
        except EmitFailed as e:
            on_error(e)

    if aborted:
        return
    if failure is not None:
        outbox.put_nowait({"type": "error", "message": str(failure), "requestId": request_id})
        return
    finish_reply(request_id, session_id, body.input, "".join(reply_parts).strip())
    outbox.put_nowait({"type": ENVELOPE_TYPE, "data": {"type": "complete", "requestId": request_id}})


async def pump_outbox(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        item = await outbox.get()
        await websocket.send_json(item)


@app.get("/healthz")
def healthz():
    """
    健康检查接口。

    输出：
        JSON：{"status": "ok"}
    """
    return {"status": "ok"}


@app.get("/prompts")
def list_prompts():
    """
    列出可用的 System Prompt 模板名与摘要。
    """
    return {"prompts": [{"name": k, "preview": PROMPTS[k][:40]} for k in PROMPTS.keys()]}


@app.get("/prompts/{name}")
def get_prompt(name: str):
    text = PROMPTS.get(name)
    if not text:
        return JSONResponse(status_code=404, content={"error": "prompt not found"})
    return {"name": name, "text": text}


@app.post("/chat/stream")
async def chat_stream_post(body: ChatStreamBody):
    """
    SSE 主入口（POST）。

    输入：
        body: ChatStreamBody，请求体（可携带本次的分段参数覆盖）

    输出：
        StreamingResponse：`text/event-stream`，文本以 content.segment 事件分段下发。
    """
    return StreamingResponse(segment_generator(body), media_type="text/event-stream")


@app.get("/chat/stream")
async def chat_stream_get(
    input: str,
    sessionId: Optional[str] = None,
    system: Optional[str] = None,
    systemPromptName: Optional[str] = None,
    temperature: Optional[float] = 0.7,
    minBufferChars: Optional[int] = None,
):
    """
    SSE 兼容入口（GET），便于浏览器 EventSource 使用。
    """
    body = ChatStreamBody(
        input=input,
        sessionId=sessionId,
        system=system,
        systemPromptName=systemPromptName,
        temperature=temperature,
        minBufferChars=minBufferChars,
    )
    return await chat_stream_post(body)


@app.websocket("/chat/ws")
async def chat_ws(websocket: WebSocket):
    """
    WebSocket 入口：客户端每发送一个 ChatStreamBody JSON，服务端按分段下发回复。

    下发信封：
        {"type": "chat-response", "data": {"type": "message", "content": ..., "isPartial": ...}}
        {"type": "chat-response", "data": {"type": "complete", "requestId": ...}}
        {"type": "error", "message": ...}
    """
    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()
    sender = asyncio.create_task(pump_outbox(websocket, outbox))
    log_json(logger, logging.INFO, "ws.connect")
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                body = ChatStreamBody.model_validate(json.loads(raw))
            except (ValueError, ValidationError) as e:
                log_json(logger, logging.WARNING, "ws.request.invalid", error=str(e))
                outbox.put_nowait({"type": "error", "message": "invalid request body"})
                continue
            await relay_reply(body, outbox, sender)
            if sender.done():
                break
    except WebSocketDisconnect:
        log_json(logger, logging.INFO, "ws.disconnect")
    finally:
        sender.cancel()
        for result in await asyncio.gather(sender, return_exceptions=True):
            if isinstance(result, Exception):
                log_json(logger, logging.WARNING, "ws.send.failed", error=str(result))
