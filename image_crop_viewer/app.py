from __future__ import annotations

import argparse
import logging
import os
import re
from concurrent.futures import Future
from pathlib import Path
from typing import List, Optional

import tkinter as tk
from tkinter import filedialog, messagebox, ttk
from urllib.parse import unquote, urlparse

from PIL import Image, ImageTk

try:
    from tkinterdnd2 import DND_FILES, TkinterDnD
    DND_AVAILABLE = True
except ImportError:  # pragma: no cover - depends on optional dependency
    DND_AVAILABLE = False
    DND_FILES = None
    TkinterDnD = None

from .config import EngineTokens, load_tokens
from .controller import PointerEvent, PointerKind, TransformController, WheelEvent
from .core import ContainerSize, CropRegion, OutputImage, SourceImageSize, ViewportTransform, fit_display_size
from .errors import CropBusyError, CropError
from .raster import CropSession, load_source

LOGGER = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".tif", ".tiff", ".gif"}


def parse_drop_files(data: str) -> List[str]:
    if not data:
        return []
    tokens = re.findall(r"{[^}]+}|[^\s]+", data)
    paths = [normalize_drop_path(token.strip().strip("{}")) for token in tokens]
    return [p for p in paths if p]


def normalize_drop_path(value: str) -> str:
    if value.startswith("file://"):
        parsed = urlparse(value)
        value = unquote(parsed.path)
        if os.name == "nt" and value.startswith("/"):
            value = value[1:]
    return value


def display_rect(
    transform: ViewportTransform,
    container: ContainerSize,
    source: SourceImageSize,
) -> tuple[float, float, float, float]:
    """Canvas ``(left, top, width, height)`` of the image: fitted, centered, scaled, then translated."""
    fit_w, fit_h = fit_display_size(container, source)
    scale = transform.scale
    width = fit_w * scale
    height = fit_h * scale
    left = container.width / 2.0 + transform.translate_x * scale - width / 2.0
    top = container.height / 2.0 + transform.translate_y * scale - height / 2.0
    return (left, top, width, height)


def visible_source_box(
    transform: ViewportTransform,
    container: ContainerSize,
    source: SourceImageSize,
) -> Optional[tuple[tuple[int, int, int, int], tuple[int, int], tuple[int, int]]]:
    """Source box, canvas position and canvas size of the part of the image inside the container."""
    left, top, width, height = display_rect(transform, container, source)
    if width <= 0 or height <= 0:
        return None
    vis_x0 = max(0.0, left)
    vis_y0 = max(0.0, top)
    vis_x1 = min(float(container.width), left + width)
    vis_y1 = min(float(container.height), top + height)
    if vis_x1 - vis_x0 < 1 or vis_y1 - vis_y0 < 1:
        return None

    px_per_unit = source.natural_width / width
    src_x0 = max(int((vis_x0 - left) * px_per_unit), 0)
    src_y0 = max(int((vis_y0 - top) * px_per_unit), 0)
    src_x1 = min(int(round((vis_x1 - left) * px_per_unit)), source.natural_width)
    src_y1 = min(int(round((vis_y1 - top) * px_per_unit)), source.natural_height)
    if src_x1 <= src_x0 or src_y1 <= src_y0:
        return None
    dest_size = (max(int(vis_x1 - vis_x0), 1), max(int(vis_y1 - vis_y0), 1))
    return ((src_x0, src_y0, src_x1, src_y1), (int(vis_x0), int(vis_y0)), dest_size)


def default_crop_region(source: SourceImageSize) -> CropRegion:
    """Largest centered square, the aspect used by the profile-picture cropper."""
    side = min(source.natural_width, source.natural_height)
    return CropRegion(
        x=(source.natural_width - side) // 2,
        y=(source.natural_height - side) // 2,
        width=side,
        height=side,
    )


def default_output_name(source_path: Optional[str]) -> str:
    if source_path:
        return f"{Path(source_path).stem}_cropped.png"
    return "cropped.png"


class CropViewerApp(ttk.Frame):
    POLL_MS = 50

    def __init__(
        self,
        master: tk.Tk,
        path: Optional[str] = None,
        output_path: Optional[str] = None,
        tokens: Optional[EngineTokens] = None,
    ) -> None:
        super().__init__(master)
        self.master = master
        self.tokens = tokens or EngineTokens()
        self.output_path = output_path
        self.source: Optional[Image.Image] = None
        self.source_path: Optional[str] = None
        self.controller = TransformController(ContainerSize(1, 1), SourceImageSize(0, 0), self.tokens)
        self.session = CropSession(tokens=self.tokens)
        self._pending: Optional[Future] = None
        self.photo: Optional[ImageTk.PhotoImage] = None

        self.rotation_var = tk.DoubleVar(value=0.0)
        self.rotation_label_var = tk.StringVar(value="0°")
        self.zoom_label_var = tk.StringVar(value="Zoom: 100%")
        self.status_var = tk.StringVar(value="No image loaded.")
        self.crop_vars = {name: tk.IntVar(value=0) for name in ("x", "y", "width", "height")}

        self._build_ui()
        self._bind_events()
        self._configure_drag_drop()

        if path:
            self.load_image(path)

    def _build_ui(self) -> None:
        self.master.title("Image Crop Viewer")
        self.master.minsize(800, 560)
        self.pack(fill="both", expand=True)

        self.canvas = tk.Canvas(self, background="#14110D", highlightthickness=0, width=560, height=480)
        self.canvas.pack(side="left", fill="both", expand=True)

        sidebar = ttk.Frame(self, padding=12)
        sidebar.pack(side="right", fill="y")

        ttk.Button(sidebar, text="Open Image", command=self._open_image_dialog).pack(fill="x")

        zoom_frame = ttk.LabelFrame(sidebar, text="View", padding=8)
        zoom_frame.pack(fill="x", pady=(12, 0))
        ttk.Label(zoom_frame, textvariable=self.zoom_label_var).pack(anchor="w")
        zoom_buttons = ttk.Frame(zoom_frame)
        zoom_buttons.pack(fill="x", pady=(6, 0))
        ttk.Button(zoom_buttons, text="−", width=3, command=lambda: self._after_change(self.controller.zoom_out())).pack(
            side="left"
        )
        ttk.Button(zoom_buttons, text="+", width=3, command=lambda: self._after_change(self.controller.zoom_in())).pack(
            side="left", padx=6
        )
        ttk.Button(zoom_buttons, text="Reset", command=lambda: self._after_change(self.controller.reset())).pack(
            side="left"
        )

        crop_frame = ttk.LabelFrame(sidebar, text="Crop", padding=8)
        crop_frame.pack(fill="x", pady=(12, 0))
        for row, name in enumerate(("x", "y", "width", "height")):
            ttk.Label(crop_frame, text=name.capitalize()).grid(row=row, column=0, sticky="w", pady=2)
            entry = ttk.Entry(crop_frame, textvariable=self.crop_vars[name], width=8)
            entry.grid(row=row, column=1, sticky="e", pady=2)
            entry.bind("<FocusOut>", lambda _: self._render_view())
        ttk.Label(crop_frame, text="Rotation").grid(row=4, column=0, sticky="w", pady=(8, 0))
        ttk.Label(crop_frame, textvariable=self.rotation_label_var).grid(row=4, column=1, sticky="e", pady=(8, 0))
        ttk.Scale(
            crop_frame,
            from_=0.0,
            to=360.0,
            variable=self.rotation_var,
            command=self._on_rotation,
        ).grid(row=5, column=0, columnspan=2, sticky="ew")

        self.crop_button = ttk.Button(sidebar, text="Crop & Save", command=self._commit_crop)
        self.crop_button.pack(fill="x", pady=(12, 0))

        ttk.Label(self.master, textvariable=self.status_var, anchor="w", padding=(12, 4)).pack(
            side="bottom", fill="x"
        )

    def _bind_events(self) -> None:
        self.canvas.bind("<Configure>", self._on_configure)
        self.canvas.bind("<MouseWheel>", self._on_mousewheel)
        self.canvas.bind("<Button-4>", self._on_mousewheel_linux)
        self.canvas.bind("<Button-5>", self._on_mousewheel_linux)
        self.canvas.bind("<ButtonPress-1>", lambda e: self._on_pointer(PointerKind.DOWN, e))
        self.canvas.bind("<B1-Motion>", lambda e: self._on_pointer(PointerKind.MOVE, e))
        self.canvas.bind("<ButtonRelease-1>", lambda e: self._on_pointer(PointerKind.UP, e))
        self.canvas.bind("<Leave>", lambda e: self._on_pointer(PointerKind.LEAVE, e))
        self.master.bind_all("<KeyPress-plus>", lambda _: self._after_change(self.controller.zoom_in()), add=True)
        self.master.bind_all("<KeyPress-equal>", lambda _: self._after_change(self.controller.zoom_in()), add=True)
        self.master.bind_all("<KeyPress-minus>", lambda _: self._after_change(self.controller.zoom_out()), add=True)
        self.master.bind_all("<KeyPress-0>", lambda _: self._after_change(self.controller.reset()), add=True)
        self.master.bind_all("<Escape>", lambda _: self._quit(), add=True)

    def _configure_drag_drop(self) -> None:
        if not DND_AVAILABLE or not hasattr(self.master, "drop_target_register"):
            return
        try:
            self.master.drop_target_register(DND_FILES)
            self.master.dnd_bind("<<Drop>>", self._on_drop)
        except tk.TclError:
            LOGGER.info("Drag & drop unavailable in this Tk build")

    def _on_drop(self, event: tk.Event) -> str:
        paths = parse_drop_files(str(getattr(event, "data", "")))
        images = [p for p in paths if os.path.isfile(p) and Path(p).suffix.lower() in SUPPORTED_EXTENSIONS]
        if not images:
            messagebox.showerror("Unsupported file", "Drop an image file (png, jpg, webp, bmp, tif, gif).")
            return "break"
        self.load_image(images[0])
        return "break"

    def _open_image_dialog(self) -> None:
        path = filedialog.askopenfilename(
            title="Open image",
            filetypes=[("Image files", " ".join(f"*{ext}" for ext in sorted(SUPPORTED_EXTENSIONS))), ("All files", "*.*")],
        )
        if path:
            self.load_image(path)

    def load_image(self, path: str) -> None:
        try:
            image = load_source(path)
        except CropError as exc:
            messagebox.showerror("Load failed", str(exc))
            return
        self.source = image
        self.source_path = path
        size = SourceImageSize.of(image)
        self.controller.set_source(size)
        region = default_crop_region(size)
        for name in ("x", "y", "width", "height"):
            self.crop_vars[name].set(getattr(region, name))
        LOGGER.info("Loaded %s (%dx%d)", path, size.natural_width, size.natural_height)
        self._set_status(f"Loaded {os.path.basename(path)} ({size.natural_width}x{size.natural_height}).")
        self._after_change(self.controller.transform)

    def _on_configure(self, event: tk.Event) -> None:
        self.controller.resize(ContainerSize(max(event.width, 1), max(event.height, 1)))
        self._render_view()

    def _on_mousewheel(self, event: tk.Event) -> None:
        if event.delta == 0:
            return
        # Tk reports positive deltas for wheel-up; the controller expects DOM-style deltas.
        self._after_change(self.controller.handle(WheelEvent(-event.delta)))

    def _on_mousewheel_linux(self, event: tk.Event) -> None:
        num = getattr(event, "num", 0)
        if num == 4:
            self._after_change(self.controller.handle(WheelEvent(-1.0)))
        elif num == 5:
            self._after_change(self.controller.handle(WheelEvent(1.0)))

    def _on_pointer(self, kind: PointerKind, event: tk.Event) -> None:
        if kind is PointerKind.DOWN:
            self.canvas.focus_set()
        self._after_change(self.controller.handle(PointerEvent(kind, event.x, event.y)))

    def _on_rotation(self, _: str | None = None) -> None:
        self.rotation_label_var.set(f"{float(self.rotation_var.get()):.0f}°")

    def _after_change(self, transform: ViewportTransform) -> None:
        self.zoom_label_var.set(f"Zoom: {int(round(transform.scale * 100))}%")
        self._render_view()

    def _crop_region(self) -> Optional[CropRegion]:
        try:
            return CropRegion(**{name: int(var.get()) for name, var in self.crop_vars.items()})
        except (tk.TclError, ValueError):
            return None

    def _render_view(self) -> None:
        self.canvas.delete("all")
        if self.source is None:
            self.canvas.create_text(
                self.canvas.winfo_width() // 2,
                self.canvas.winfo_height() // 2,
                text="Open or drop an image",
                fill="#F2E6D8",
            )
            return
        container = self.controller.container
        size = self.controller.source
        transform = self.controller.transform
        visible = visible_source_box(transform, container, size)
        if visible is None:
            return
        box, pos, dest_size = visible
        patch = self.source.crop(box).resize(dest_size, resample=Image.BILINEAR)
        self.photo = ImageTk.PhotoImage(patch)
        self.canvas.create_image(pos[0], pos[1], image=self.photo, anchor="nw")

        region = self._crop_region()
        if region is not None and size.natural_width > 0:
            left, top, width, _ = display_rect(transform, container, size)
            units = width / size.natural_width
            self.canvas.create_rectangle(
                left + region.x * units,
                top + region.y * units,
                left + (region.x + region.width) * units,
                top + (region.y + region.height) * units,
                outline="#C06A33",
                width=2,
            )

    def _commit_crop(self) -> None:
        if self.source is None:
            return
        region = self._crop_region()
        if region is None:
            messagebox.showerror("Crop failed", "Crop fields must be whole numbers.")
            return
        try:
            self._pending = self.session.submit(self.source, region, float(self.rotation_var.get()))
        except CropBusyError:
            return
        self.crop_button.state(["disabled"])
        self._set_status("Cropping…")
        self.after(self.POLL_MS, self._poll_crop)

    def _poll_crop(self) -> None:
        future = self._pending
        if future is None:
            return
        if not future.done():
            self.after(self.POLL_MS, self._poll_crop)
            return
        self._pending = None
        self.crop_button.state(["!disabled"])
        try:
            output = future.result()
        except CropError as exc:
            messagebox.showerror("Crop failed", str(exc))
            self._set_status("Crop failed.")
            return
        self._save_output(output)

    def _save_output(self, output: OutputImage) -> None:
        path = self.output_path or filedialog.asksaveasfilename(
            title="Save cropped image",
            defaultextension=".png",
            initialfile=default_output_name(self.source_path),
            filetypes=[("PNG", "*.png"), ("All files", "*.*")],
        )
        if not path:
            self._set_status("Crop discarded.")
            return
        try:
            output.save(path)
        except OSError as exc:
            messagebox.showerror("Save failed", str(exc))
            return
        self._set_status(f"Saved {output.width}x{output.height} crop: {os.path.basename(path)}")

    def _set_status(self, message: str) -> None:
        self.status_var.set(message)

    def _quit(self) -> None:
        self._pending = None
        self.session.close()
        self.master.destroy()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Pan, zoom, rotate and crop an image.")
    parser.add_argument("path", nargs="?", help="Image to open")
    parser.add_argument("--output", help="Write crops here instead of asking")
    parser.add_argument("--config", help="JSON file overriding engine tokens")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, ...)")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    tokens = load_tokens(args.config)
    root = TkinterDnD.Tk() if DND_AVAILABLE else tk.Tk()
    app = CropViewerApp(root, path=args.path, output_path=args.output, tokens=tokens)
    root.protocol("WM_DELETE_WINDOW", app._quit)
    app.mainloop()


if __name__ == "__main__":
    main()
