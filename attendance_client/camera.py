import cv2

from .exceptions import CameraError


class CameraStream:
    """OpenCV capture for one camera index; ``open`` and ``close`` may be called repeatedly."""

    def __init__(self, camera_index: int = 0, width: int = 720, height: int = 560):
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.cap = None

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.cap is not None

    @property
    def frame_size(self) -> tuple[int, int]:
        if self.cap is None:
            return (0, 0)
        return (
            int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
        )

    def open(self) -> None:
        if self.cap is not None:
            return
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            cap.release()
            raise CameraError(f"Camera {self.camera_index} failed to open (permission denied or not present).")

        # Drivers may ignore the requested size; frame_size reports what was granted.
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap = cap

    def read(self):
        if self.cap is None:
            raise CameraError(f"Camera {self.camera_index} is not open.")

        ok, frame = self.cap.read()
        if not ok or frame is None:
            raise CameraError(f"Camera {self.camera_index} returned no frame.")
        return frame

    def close(self) -> None:
        cap, self.cap = self.cap, None
        if cap is not None:
            cap.release()
