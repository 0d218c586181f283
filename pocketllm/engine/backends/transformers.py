"""Inference backend for Hugging Face causal language models (PyTorch)."""

from __future__ import annotations

import logging
import os
import re
from typing import TYPE_CHECKING, Any, Sequence

from ..errors import ContextInitError, DecodeFailure, ModelLoadError
from .base import InferenceBackend

if TYPE_CHECKING:
    import torch

    from ..batch import Batch
    from ..types import Message

logger = logging.getLogger(__name__)

DEFAULT_N_CTX = 2048

# Vocabulary entries that end a turn in common chat formats.
_EOG_MARKERS = (
    "<|im_end|>",
    "<|eot_id|>",
    "<|end_of_text|>",
    "<|endoftext|>",
    "<end_of_turn>",
    "<|end|>",
    "</s>",
)

_BYTE_TOKEN = re.compile(r"<0x([0-9A-Fa-f]{2})>")
_SPIECE_UNDERLINE = "▁"


def _bytes_to_unicode() -> dict[int, str]:
    """GPT-2 byte-level BPE alphabet: every byte maps to one printable character."""
    bs = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    cs = bs[:]
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return dict(zip(bs, (chr(c) for c in cs)))


class TransformersBackend(InferenceBackend):
    """
    Backend running a `transformers` causal LM with one `DynamicCache` per sequence.

    Each sequence id owns its own key-value cache. `decode()` requires the
    records of a sequence to continue that sequence's timeline: the first
    position must equal the number of tokens already cached for it.

    Example:
        >>> backend = TransformersBackend()
        >>> backend.load("Qwen/Qwen2.5-0.5B-Instruct", n_ctx=2048)
        >>> backend.context_size
        2048
    """

    # -------------------------------------------------------------------------
    # Initialization
    # -------------------------------------------------------------------------

    def __init__(self) -> None:
        self._model = None
        self._tokenizer = None
        self._model_path: str | None = None
        self._device: str = "cpu"
        self._dtype = None
        self._n_ctx: int = 0
        self._n_threads: int = 1
        self._caches: dict[int, Any] = {}
        self._logits: dict[int, torch.Tensor] = {}
        self._eog_ids: frozenset[int] = frozenset()
        self._control_ids: frozenset[int] = frozenset()
        self._added_ids: frozenset[int] = frozenset()
        self._byte_decoder: dict[str, int] | None = None
        self._piece_cache: dict[int, bytes] = {}
        self._size_bytes: int = 0
        self._n_params: int = 0

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def model(self):
        """Access the underlying model (for advanced use cases)."""
        return self._model

    @property
    def tokenizer(self):
        return self._tokenizer

    @property
    def context_size(self) -> int:
        return self._n_ctx

    @property
    def n_vocab(self) -> int:
        if self._tokenizer is None:
            return 0
        return len(self._tokenizer)

    @property
    def chat_template(self) -> str | None:
        if self._tokenizer is None:
            return None
        template = getattr(self._tokenizer, "chat_template", None)
        if isinstance(template, str) and template:
            return template
        return None

    @property
    def description(self) -> str:
        if self._model is None:
            return "unloaded"
        model_type = getattr(self._model.config, "model_type", None) or "unknown"
        dtype = str(self._dtype).replace("torch.", "")
        return f"{model_type} {self._n_params / 1e9:.2f}B {dtype}"

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    @property
    def n_params(self) -> int:
        return self._n_params

    @property
    def device_name(self) -> str:
        return self._device

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, model_path: str, **kwargs) -> None:
        """Load a causal LM and its tokenizer, then create the inference context.

        Args:
            model_path: Local directory, hub id, or path to a `.gguf` file.
            n_ctx: Context size in tokens (default: 2048).
            device: Torch device (default: cuda, then mps, then cpu).
            dtype: Torch dtype (default: float16 on accelerators, float32 on cpu).
            n_threads: CPU threads (default: max(1, min(8, cpu_count - 2))).
            **kwargs: Additional kwargs passed to from_pretrained().
        """
        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        from ...runtime import default_device, default_thread_count

        self._model_path = model_path
        self._device = kwargs.pop("device", None) or default_device()
        self._dtype = kwargs.pop("dtype", None) or (
            torch.float32 if self._device == "cpu" else torch.float16
        )
        n_ctx = int(kwargs.pop("n_ctx", DEFAULT_N_CTX))
        self._n_threads = int(kwargs.pop("n_threads", None) or default_thread_count())
        trust_remote_code = kwargs.pop("trust_remote_code", False)

        # A single GGUF file is loaded from its directory.
        load_kwargs: dict[str, Any] = {}
        source = model_path
        if model_path.lower().endswith(".gguf"):
            source = os.path.dirname(os.path.abspath(model_path))
            load_kwargs["gguf_file"] = os.path.basename(model_path)

        logger.info("Loading model %s (device=%s dtype=%s)", model_path, self._device, self._dtype)
        try:
            self._tokenizer = AutoTokenizer.from_pretrained(
                source,
                trust_remote_code=trust_remote_code,
                **load_kwargs,
            )
            self._model = AutoModelForCausalLM.from_pretrained(
                source,
                torch_dtype=self._dtype,
                trust_remote_code=trust_remote_code,
                **load_kwargs,
                **kwargs,
            )
        except (OSError, ValueError, KeyError, RuntimeError) as exc:
            self._model = None
            self._tokenizer = None
            raise ModelLoadError(model_path, str(exc)) from exc

        self._init_context(n_ctx)

    def _init_context(self, n_ctx: int) -> None:
        import torch

        path = self._model_path or "<unknown>"
        if n_ctx <= 0:
            self.close()
            raise ContextInitError(path, f"n_ctx must be > 0, got {n_ctx}")

        max_positions = getattr(self._model.config, "max_position_embeddings", None)
        if isinstance(max_positions, int) and 0 < max_positions < n_ctx:
            logger.warning("n_ctx=%d exceeds model limit %d; clamping", n_ctx, max_positions)
            n_ctx = max_positions

        try:
            torch.set_num_threads(self._n_threads)
            self._model.to(self._device)
            self._model.eval()
        except (RuntimeError, AssertionError, ValueError) as exc:
            self.close()
            raise ContextInitError(path, str(exc)) from exc

        self._n_ctx = n_ctx
        self._n_params = sum(p.numel() for p in self._model.parameters())
        self._size_bytes = sum(p.numel() * p.element_size() for p in self._model.parameters())
        self._build_vocab_tables()
        logger.info("Context ready: n_ctx=%d threads=%d (%s)", self._n_ctx, self._n_threads, self.description)

    def _build_vocab_tables(self) -> None:
        tok = self._tokenizer
        vocab: dict[str, int] = tok.get_vocab()

        added = getattr(tok, "added_tokens_decoder", {}) or {}
        self._added_ids = frozenset(int(i) for i in added)
        control = {int(i) for i, t in added.items() if getattr(t, "special", False)}
        control.update(int(i) for i in (tok.all_special_ids or []))
        self._control_ids = frozenset(control)

        eog: set[int] = set()
        gen_cfg = getattr(self._model, "generation_config", None)
        eos = getattr(gen_cfg, "eos_token_id", None) if gen_cfg is not None else None
        if isinstance(eos, int):
            eog.add(eos)
        elif isinstance(eos, (list, tuple)):
            eog.update(int(e) for e in eos)
        if tok.eos_token_id is not None:
            eog.add(int(tok.eos_token_id))
        for marker in _EOG_MARKERS:
            if marker in vocab:
                eog.add(int(vocab[marker]))
        self._eog_ids = frozenset(eog)

        if any(t.startswith("Ġ") for t in vocab):
            self._byte_decoder = {ch: b for b, ch in _bytes_to_unicode().items()}
        else:
            self._byte_decoder = None
        self._piece_cache.clear()

    def close(self) -> None:
        """Free the key-value caches, then the model (GPU memory included)."""
        import gc

        import torch

        self.memory_clear()
        self._model = None
        self._tokenizer = None
        self._piece_cache.clear()

        gc.collect()
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    def _ensure_loaded(self) -> None:
        """Raise if model/tokenizer not loaded."""
        if self._model is None or self._tokenizer is None:
            raise RuntimeError("Model not loaded. Call load() first.")

    # -------------------------------------------------------------------------
    # Vocabulary
    # -------------------------------------------------------------------------

    def tokenize(
        self,
        text: str,
        n_tokens_max: int,
        *,
        add_special: bool,
        parse_special: bool = True,
    ) -> tuple[int, list[int]]:
        self._ensure_loaded()
        _ = parse_special  # transformers always parses special tokens in text

        # Chat templates usually emit BOS themselves.
        bos = getattr(self._tokenizer, "bos_token", None)
        if add_special and bos and text.startswith(bos):
            add_special = False

        try:
            ids = self._tokenizer.encode(text, add_special_tokens=add_special)
        except (ValueError, TypeError) as exc:
            logger.warning("Tokenizer rejected prompt: %s", exc)
            return 0, []

        if len(ids) > n_tokens_max:
            return -len(ids), []
        return len(ids), [int(i) for i in ids]

    def token_to_piece(self, token: int, length: int, *, special: bool = False) -> tuple[int, bytes]:
        self._ensure_loaded()
        token = int(token)
        if token in self._control_ids and not special:
            piece = b""
        else:
            piece = self._piece_cache.get(token)
            if piece is None:
                piece = self._piece_bytes(token)
                self._piece_cache[token] = piece

        if len(piece) > length:
            return -len(piece), b""
        return len(piece), piece

    def _piece_bytes(self, token: int) -> bytes:
        text = self._tokenizer.convert_ids_to_tokens(token)
        if not text:
            return b""
        if token in self._added_ids:
            return text.encode("utf-8")

        if self._byte_decoder is not None:
            try:
                return bytes(self._byte_decoder[ch] for ch in text)
            except KeyError:
                return text.encode("utf-8")

        match = _BYTE_TOKEN.fullmatch(text)
        if match:
            return bytes([int(match.group(1), 16)])
        return text.replace(_SPIECE_UNDERLINE, " ").encode("utf-8")

    def is_eog(self, token: int) -> bool:
        return int(token) in self._eog_ids

    def apply_chat_template(
        self,
        template: str,
        messages: Sequence[Message],
        *,
        add_assistant: bool,
        length: int,
    ) -> tuple[int, bytes]:
        self._ensure_loaded()
        conversation = [{"role": m.role, "content": m.content} for m in messages]
        try:
            rendered = self._tokenizer.apply_chat_template(
                conversation,
                chat_template=template,
                tokenize=False,
                add_generation_prompt=add_assistant,
            )
            data = rendered.encode("utf-8")
        except Exception as exc:
            logger.warning("Chat template could not be applied: %s", exc)
            return -1, b""
        return len(data), data[:length]

    # -------------------------------------------------------------------------
    # Decode
    # -------------------------------------------------------------------------

    def decode(self, batch: Batch) -> None:
        self._ensure_loaded()
        import torch
        from transformers import DynamicCache

        if batch.n_tokens == 0:
            raise DecodeFailure("Cannot decode an empty batch.")

        # Group rows by their (first) sequence id, preserving batch order.
        groups: dict[int, list[int]] = {}
        for i, record in enumerate(batch):
            groups.setdefault(record.seq_ids[0], []).append(i)

        records = list(batch)
        self._logits.clear()

        for seq_id, rows in groups.items():
            cache = self._caches.get(seq_id)
            if cache is None:
                cache = DynamicCache()
            past = int(cache.get_seq_length())

            positions = [records[i].position for i in rows]
            if positions != list(range(past, past + len(rows))):
                raise DecodeFailure(
                    f"Sequence {seq_id}: positions {positions[0]}..{positions[-1]} do not continue "
                    f"the cached timeline (cached={past})."
                )
            if positions[-1] >= self._n_ctx:
                raise DecodeFailure(f"Sequence {seq_id}: position {positions[-1]} exceeds n_ctx={self._n_ctx}.")

            device = self._model.device
            input_ids = torch.tensor([[records[i].token for i in rows]], dtype=torch.long, device=device)
            position_ids = torch.tensor([positions], dtype=torch.long, device=device)
            cache_position = torch.arange(past, past + len(rows), device=device)

            try:
                with torch.no_grad():
                    outputs = self._model(
                        input_ids,
                        position_ids=position_ids,
                        cache_position=cache_position,
                        past_key_values=cache,
                        use_cache=True,
                    )
            except RuntimeError as exc:
                raise DecodeFailure(f"Forward pass failed for sequence {seq_id}: {exc}") from exc

            self._caches[seq_id] = outputs.past_key_values
            for j, i in enumerate(rows):
                if records[i].emit_logits:
                    self._logits[i] = outputs.logits[0, j].detach()

    def get_logits(self, index: int) -> torch.Tensor:
        row = self._logits.get(int(index))
        if row is None:
            raise DecodeFailure(f"No logits were computed for batch index {index}.")
        return row

    def memory_clear(self) -> None:
        self._caches.clear()
        self._logits.clear()

    def synchronize(self) -> None:
        from ...runtime import synchronize_device

        synchronize_device(self._device)
